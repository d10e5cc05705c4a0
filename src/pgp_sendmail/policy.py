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

"""Decide whether and how a message body gets encrypted.

The decision is keyed on one recipient address:

1. no public key for the recipient: the body passes through untouched
2. a public key and no policy document: always encrypt
3. a public key and a policy document: encrypt only if the policy
   contains the trigger string chosen by the active :class:`Trigger`

Encryption signs as well when the sender identity has a private key in
the store.
"""

import logging
from typing import TYPE_CHECKING, NamedTuple, Optional

if TYPE_CHECKING:
    from .keystore import KeyStore

log = logging.getLogger(__name__)

MARKER = '...'


class Decision(NamedTuple):
    """Outcome of :meth:`EncryptionSelector.decide`."""

    body: bytes
    encrypted: bool = False
    signed: bool = False
    wraps: int = 0


class Trigger:
    """How a policy document is matched against a message.

    ``wraps`` is the number of times the body is encrypted when the
    policy matches.
    """

    name = 'trigger'
    wraps = 1

    def __repr__(self) -> str:
        return f"<{type(self).__name__} wraps={self.wraps}>"

    def trigger(self, subject: Optional[str]) -> str:
        raise NotImplementedError()

    def matches(self, policy: bytes, subject: Optional[str]) -> bool:
        """Substring test of the trigger string against ``policy``.

        >>> MarkerTrigger().matches(b'encrypt ... please', 'anything')
        True
        >>> SubjectTrigger().matches(b'secret, private', 'private')
        True
        >>> SubjectTrigger().matches(b'secret, private', 'hello')
        False
        """
        return self.trigger(subject).encode('utf-8') in policy


class MarkerTrigger(Trigger):
    """Command submission: the subject is replaced by the marker."""

    name = 'marker'

    def trigger(self, subject: Optional[str]) -> str:
        return MARKER


class SubjectTrigger(Trigger):
    """Inbound SMTP: the parsed subject of the message is the trigger.

    A match encrypts ``wraps`` times in sequence, each pass wrapping the
    armored output of the previous one.
    """

    name = 'subject'

    def __init__(self, wraps: int = 2) -> None:
        if wraps < 1:
            raise ValueError(f"wraps must be positive ({wraps})")
        self.wraps = wraps

    def trigger(self, subject: Optional[str]) -> str:
        return subject or ''


class EncryptionSelector:
    """Policy engine that transforms a body for one recipient.

    ``crypt`` provides ``encrypt(data, public_key)`` and
    ``sign_and_encrypt(data, public_key, private_key, passphrase)``, see
    :class:`~pgp_sendmail.crypt.GpgmeTool`.
    """

    def __init__(
        self,
        keystore: 'KeyStore',
        crypt,
        trigger: Optional[Trigger] = None,
        sender_identity: Optional[str] = None,
        passphrase: Optional[bytes] = None,
    ) -> None:
        if trigger is None:
            trigger = MarkerTrigger()
        self.keystore = keystore
        self.crypt = crypt
        self.trigger = trigger
        self.sender_identity = sender_identity
        self.passphrase = passphrase

    def decide(
        self, recipient: str, subject: Optional[str], body: bytes
    ) -> Decision:
        public_key = self.keystore.public_key(recipient)
        if public_key is None:
            log.info('no public key for %s, skipping encryption', recipient)
            return Decision(body)

        policy = self.keystore.policy(recipient)
        if policy is None:
            log.info('no policy for %s, encrypting everything', recipient)
            return self._encrypt(body, public_key, wraps=1)

        if not self.trigger.matches(policy, subject):
            log.info(
                'policy for %s does not match %s trigger, not encrypting',
                recipient,
                self.trigger.name,
            )
            return Decision(body)

        log.info('policy for %s matches %s trigger', recipient,
                 self.trigger.name)
        return self._encrypt(body, public_key, wraps=self.trigger.wraps)

    def _signing_key(self) -> Optional[bytes]:
        if not self.sender_identity:
            log.debug('no sender identity, not signing')
            return None
        private_key = self.keystore.private_key(self.sender_identity)
        if private_key is None:
            log.info('no private key for %s, skipping signing',
                     self.sender_identity)
        return private_key

    def _encrypt(self, body: bytes, public_key: bytes, wraps: int) -> Decision:
        private_key = self._signing_key()
        for _ in range(wraps):
            if private_key is None:
                body = self.crypt.encrypt(body, public_key)
            else:
                body = self.crypt.sign_and_encrypt(
                    body, public_key, private_key, self.passphrase
                )
        return Decision(
            body, encrypted=True, signed=private_key is not None, wraps=wraps
        )
