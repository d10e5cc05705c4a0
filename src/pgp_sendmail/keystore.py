# Copyright (C) 2022 Jesse P. Johnson <jpj6652@gmail.com>
# Copyright (C) 2012 W. Trevor King <wking@tremily.us>
#
# This file is part of pgp-sendmail.
#
# pgp-sendmail is free software: you can redistribute it and/or modify it under
# the terms of the GNU General Public License as published by the Free Software
# Foundation, either version 3 of the License, or (at your option) any later
# version.
#
# pgp-sendmail is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS
# FOR A PARTICULAR PURPOSE.  See the GNU General Public License for more
# details.
#
# You should have received a copy of the GNU General Public License along with
# pgp-sendmail.  If not, see <http://www.gnu.org/licenses/>.

"""Read key material from a directory keyed by hashed address.

Each address maps to up to three files named after the MD5 hex digest
of the address:

* ``<hash>.pgp``: armored public key
* ``<hash>.privpgp``: armored private key
* ``<hash>.config``: policy document

The digest only selects a path.  It is not part of any trust decision,
so its collision properties do not matter.
"""

import hashlib
import logging
import os
from typing import NamedTuple, Optional

log = logging.getLogger(__name__)

KEYS_DIR = os.path.join(os.sep, 'keys')

PUBLIC_SUFFIX = '.pgp'
PRIVATE_SUFFIX = '.privpgp'
POLICY_SUFFIX = '.config'


def address_hash(address: str) -> str:
    """Return the directory-safe name for ``address``.

    The address is hashed as given, without case folding.

    >>> address_hash('bob@example.com')
    '4b9bb80620f03eb3719e0a061c14283d'
    >>> address_hash('Bob@example.com') == address_hash('bob@example.com')
    False
    """
    return hashlib.md5(address.encode('utf-8')).hexdigest()


class KeyMaterial(NamedTuple):
    """Everything the key store holds for one address."""

    public_key: Optional[bytes] = None
    private_key: Optional[bytes] = None
    policy: Optional[bytes] = None


class KeyStore:
    """Filesystem resolver for :class:`KeyMaterial`.

    Files are re-read on every lookup; nothing is cached.

    >>> store = KeyStore('/nonexistent')
    >>> store.lookup('bob@example.com')
    KeyMaterial(public_key=None, private_key=None, policy=None)
    """

    def __init__(self, directory: Optional[str] = None) -> None:
        if directory is None:
            directory = KEYS_DIR
        self.directory = directory

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.directory}>"

    def path(self, address: str, suffix: str) -> str:
        return os.path.join(self.directory, address_hash(address) + suffix)

    def _read(self, address: str, suffix: str) -> Optional[bytes]:
        path = self.path(address, suffix)
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except FileNotFoundError:
            log.debug('no %s found for %s', path, address)
            return None
        log.debug('read %d bytes from %s for %s', len(data), path, address)
        return data

    def lookup(self, address: str) -> KeyMaterial:
        """Return whatever key material exists for ``address``."""
        return KeyMaterial(
            public_key=self._read(address, PUBLIC_SUFFIX),
            private_key=self._read(address, PRIVATE_SUFFIX),
            policy=self._read(address, POLICY_SUFFIX),
        )

    def public_key(self, address: str) -> Optional[bytes]:
        return self._read(address, PUBLIC_SUFFIX)

    def private_key(self, address: str) -> Optional[bytes]:
        return self._read(address, PRIVATE_SUFFIX)

    def policy(self, address: str) -> Optional[bytes]:
        return self._read(address, POLICY_SUFFIX)
