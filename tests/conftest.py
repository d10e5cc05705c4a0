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

"""Fixtures shared by the test suite."""

import base64
from typing import Iterator, List, Optional

import pytest

from pgp_sendmail.keystore import KeyStore, address_hash
from pgp_sendmail.pipeline import Pipeline, Settings
from pgp_sendmail.result import Level, Result, ResultReporter
from pgp_sendmail.smtp import Dispatcher

BEGIN = b'-----BEGIN PGP MESSAGE-----\n'
END = b'-----END PGP MESSAGE-----\n'


def armor(data: bytes, *tags: bytes) -> bytes:
    lines = [BEGIN]
    for tag in tags:
        lines.append(b'Comment: ' + tag + b'\n')
    lines.append(b'\n')
    lines.append(base64.b64encode(data) + b'\n')
    lines.append(END)
    return b''.join(lines)


def unarmor(data: bytes) -> bytes:
    assert data.startswith(BEGIN), data
    body = data[len(BEGIN):-len(END)]
    _, _, payload = body.partition(b'\n\n')
    return base64.b64decode(payload)


class FakeCrypt:
    """Records every call and returns a reversible pseudo-armor."""

    def __init__(self, fail: Optional[Exception] = None) -> None:
        self.calls: List[tuple] = []
        self.fail = fail

    def encrypt(self, data: bytes, public_key: bytes) -> bytes:
        self.calls.append(('encrypt', public_key))
        if self.fail is not None:
            raise self.fail
        return armor(data, b'to ' + public_key.strip())

    def sign_and_encrypt(self, data, public_key, private_key, passphrase):
        self.calls.append(('sign_and_encrypt', public_key, private_key,
                           passphrase))
        if self.fail is not None:
            raise self.fail
        return armor(
            data, b'to ' + public_key.strip(), b'by ' + private_key.strip()
        )


class FakeDispatcher(Dispatcher):
    """Records envelopes and replays canned results for each of them."""

    def __init__(self, results: Optional[List[Result]] = None) -> None:
        if results is None:
            results = [Result(Level.INFO, 'send mail OK')]
        self.results = results
        self.envelopes: list = []
        self.yielded = 0
        self.closed = False

    def send(self, envelope) -> Iterator[Result]:
        self.envelopes.append(envelope)
        try:
            for result in self.results:
                self.yielded += 1
                yield result
        finally:
            self.closed = True


class CountingKeyStore(KeyStore):
    """Key store that remembers which addresses were looked up."""

    def __init__(self, directory: str) -> None:
        super().__init__(directory)
        self.reads: List[str] = []

    def _read(self, address, suffix):
        self.reads.append(address + suffix)
        return super()._read(address, suffix)


@pytest.fixture
def keys_dir(tmp_path):
    directory = tmp_path / 'keys'
    directory.mkdir()
    return directory


@pytest.fixture
def write_key(keys_dir):
    def write(address: str, suffix: str, data: bytes) -> None:
        (keys_dir / (address_hash(address) + suffix)).write_bytes(data)
    return write


@pytest.fixture
def keystore(keys_dir):
    return CountingKeyStore(str(keys_dir))


@pytest.fixture
def crypt():
    return FakeCrypt()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def make_pipeline(keys_dir, keystore, crypt, dispatcher):
    def make(**kwargs) -> Pipeline:
        settings = Settings(keys_dir=str(keys_dir), **kwargs)
        return Pipeline(
            settings,
            keystore=keystore,
            crypt=crypt,
            dispatcher=dispatcher,
            reporter=ResultReporter(verbose=settings.verbose),
        )
    return make
