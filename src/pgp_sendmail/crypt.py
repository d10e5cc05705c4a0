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

"""Encrypt, sign and decrypt using ``gpgme-tool`` over Assuan.

Keys come from the key store as armored blobs rather than from a
keyring, so every operation imports the keys it needs first and then
refers to them by fingerprint.
"""

import configparser
import logging
import os
import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple
from xml.etree import ElementTree

from assuan.client import AssuanClient
from assuan.common import Request

from .errors import CryptoError

if TYPE_CHECKING:
    from configparser import ConfigParser

log = logging.getLogger(__name__)

uid = os.getuid()
SOCKET_PATH = os.path.join(
    os.sep, 'run', 'user', str(uid), 'gnupg', 'S.gpgme-tool'
)


def get_client_params(config: 'ConfigParser') -> Dict[str, Any]:
    r"""Retrieve Assuan client paramters from a config file.

    >>> from configparser import ConfigParser
    >>> config = ConfigParser()
    >>> config.read_string(
    ...     '\n'.join(
    ...         [
    ...             '[gpgme-tool]',
    ...             'socket-path: /run/user/1000/gnupg/S.gpgme-tool',
    ...         ]
    ...      )
    ... )
    >>> get_client_params(config)
    {'socket_path': '/run/user/1000/gnupg/S.gpgme-tool'}

    >>> get_client_params(ConfigParser())
    {'socket_path': None}
    """
    params: Dict[str, Any] = {'socket_path': None}
    try:
        params['socket_path'] = config.get('gpgme-tool', 'socket-path')
    except configparser.NoSectionError:
        return params
    except configparser.NoOptionError:
        pass
    return params


def get_client(socket_path: Optional[str] = None) -> AssuanClient:
    """Get assuan client."""
    if socket_path is None:
        socket_path = SOCKET_PATH
    client = AssuanClient(name='pgp-sendmail', close_on_disconnect=True)
    client.connect(socket_path=socket_path)
    return client


def disconnect(client: AssuanClient) -> None:
    """Disconnect from assuan server."""
    client.make_request(Request('BYE'))
    client.disconnect()


def _read(desc, buffersize: int = 512) -> bytes:
    data = []
    while True:
        try:
            new = os.read(desc, buffersize)
        except OSError as err:
            log.warning('error while reading: %s', err)
            break
        if not new:
            break
        data.append(new)
    return b''.join(data)


def _write(desc, data: bytes) -> None:
    i = 0
    while i < len(data):
        i += os.write(desc, data[i:])


class _Feeder(threading.Thread):
    """Write ``data`` into ``desc`` and close it.

    The server reads its input only while the command runs.
    """

    def __init__(self, desc: int, data: bytes) -> None:
        super().__init__(name='gpgme-tool-input', daemon=True)
        self.desc = desc
        self.data = data

    def run(self) -> None:
        try:
            _write(self.desc, self.data)
        except OSError as err:
            log.warning('error while writing: %s', err)
        finally:
            os.close(self.desc)


class _Collector(threading.Thread):
    """Read ``desc`` until the server closes its end, then close it."""

    def __init__(self, desc: int) -> None:
        super().__init__(name='gpgme-tool-output', daemon=True)
        self.desc = desc
        self.data = b''

    def run(self) -> None:
        try:
            self.data = _read(self.desc)
        finally:
            os.close(self.desc)


def _send_input(client: AssuanClient, data: bytes) -> _Feeder:
    """Hand ``data`` to the server as the next command's input."""
    input_read, input_write = os.pipe()
    try:
        client.send_fds([input_read])
        client.make_request(Request('INPUT', 'FD'))
    except Exception:
        os.close(input_write)
        raise
    finally:
        os.close(input_read)
    feeder = _Feeder(input_write, data)
    feeder.start()
    return feeder


def _open_output(client: AssuanClient) -> _Collector:
    """Register a pipe as the server's output and start draining it."""
    output_read, output_write = os.pipe()
    try:
        client.send_fds([output_write])
        client.make_request(Request('OUTPUT', 'FD'))
    except Exception:
        os.close(output_read)
        raise
    finally:
        os.close(output_write)
    collector = _Collector(output_read)
    collector.start()
    return collector


def fingerprints(result: bytes) -> List[str]:
    r"""Extract the fingerprints listed in a ``RESULT`` XML document.

    >>> fingerprints(b'''<?xml version="1.0" encoding="UTF-8"?>
    ... <gpgme><import-result><imports><import-status>
    ... <fpr>B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3</fpr>
    ... </import-status></imports></import-result></gpgme>\x00''')
    ['B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3']
    """
    tree = ElementTree.fromstring(result.replace(b'\x00', b''))
    return [fpr.text.strip() for fpr in tree.iter('fpr') if fpr.text]


def import_key(client: AssuanClient, key: bytes) -> str:
    """Import an armored ``key`` and return its primary fingerprint."""
    feeder = _send_input(client, key)
    client.make_request(Request('IMPORT'))
    feeder.join()
    _, result = client.make_request(Request('RESULT'))
    found = fingerprints(result or b'<gpgme/>')
    if not found:
        raise CryptoError('key import yielded no fingerprint')
    log.debug('imported key %s', found[0])
    return found[0]


def _connect(**kwargs: Any) -> AssuanClient:
    try:
        return get_client(**kwargs)
    except Exception as err:
        raise CryptoError(f"cannot reach gpgme-tool: {err}") from err


def _run(
    client: AssuanClient,
    command: Request,
    data: bytes,
    passphrase: Optional[bytes] = None,
) -> bytes:
    """Run ``command`` with ``data`` as input and return its output."""
    feeder = _send_input(client, data)
    collector = _open_output(client)
    responses, _ = client.make_request(command, expect=['OK', 'INQUIRE'])
    if responses and responses[-1].type == 'INQUIRE':
        log.debug('answer %s', responses[-1].parameters)
        client.send_data(data=passphrase or b'')
    feeder.join()
    collector.join()
    return collector.data


def sign_and_encrypt_bytes(
    data: bytes,
    public_key: bytes,
    private_key: Optional[bytes] = None,
    passphrase: Optional[bytes] = None,
    **kwargs: Any,
) -> bytes:
    r"""Encrypt ``data`` to ``public_key``, signing with ``private_key``.

    The result is an armored OpenPGP message.

    >>> with open('/keys/4b9bb80620f03eb3719e0a061c14283d.pgp', 'rb') as f:
    ...     sign_and_encrypt_bytes(b'Hello', f.read())
    ... # doctest: +SKIP
    b'-----BEGIN PGP MESSAGE-----\n...-----END PGP MESSAGE-----\n'
    """
    client = _connect(**kwargs)
    command = 'ENCRYPT'
    try:
        client.make_request(Request('ARMOR', 'true'))
        recipient = import_key(client, public_key)
        client.make_request(Request('RECIPIENT', recipient))
        if private_key:
            signer = import_key(client, private_key)
            client.make_request(Request('SIGNER', signer))
            client.make_request(Request('PINENTRY_MODE', 'loopback'))
            command = 'SIGN_ENCRYPT'
        result = _run(
            client, Request(command, '--always-trust'), data, passphrase
        )
    except CryptoError:
        raise
    except Exception as err:
        raise CryptoError(f"{command.lower()} failed: {err}") from err
    finally:
        disconnect(client)
    if not result:
        raise CryptoError('gpgme-tool produced no output')
    return result


def decrypt_bytes(
    data: bytes, private_key: Optional[bytes] = None,
    passphrase: Optional[bytes] = None, **kwargs: Any
) -> Tuple[bytes, List[str]]:
    """Decrypt ``data`` and verify any embedded signature.

    Returns the plaintext and the fingerprints of signatures that
    verified.
    """
    client = _connect(**kwargs)
    try:
        if private_key:
            import_key(client, private_key)
            client.make_request(Request('PINENTRY_MODE', 'loopback'))
        plain = _run(client, Request('DECRYPT_VERIFY'), data, passphrase)
        _, result = client.make_request(Request('RESULT'))
        signers = verified_signers(result or b'<gpgme/>')
    except CryptoError:
        raise
    except Exception as err:
        raise CryptoError(f"decrypt failed: {err}") from err
    finally:
        disconnect(client)
    return (plain, signers)


def verified_signers(result: bytes) -> List[str]:
    r"""Fingerprints of the good signatures in a ``RESULT`` XML document.

    >>> verified_signers(b'''<gpgme><verify-result><signatures>
    ... <signature><status value="0x0">Success</status>
    ... <fpr>B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3</fpr></signature>
    ... <signature><status value="0x9">No public key</status>
    ... <fpr>DECAFBAD</fpr></signature>
    ... </signatures></verify-result></gpgme>''')
    ['B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3']
    """
    signers = []
    tree = ElementTree.fromstring(result.replace(b'\x00', b''))
    for signature in tree.iter('signature'):
        status = signature.find('status')
        fpr = signature.find('fpr')
        if status is not None and status.get('value') == '0x0' and (
                fpr is not None and fpr.text):
            signers.append(fpr.text.strip())
    return signers


def verify_bytes(
    data: bytes, public_key: Optional[bytes] = None, **kwargs: Any
) -> Tuple[bytes, List[str]]:
    """Verify an inline-signed ``data`` against ``public_key``.

    Returns the signed content and the fingerprints that verified.
    """
    client = _connect(**kwargs)
    try:
        if public_key:
            import_key(client, public_key)
        plain = _run(client, Request('VERIFY'), data)
        _, result = client.make_request(Request('RESULT'))
        signers = verified_signers(result or b'<gpgme/>')
    except CryptoError:
        raise
    except Exception as err:
        raise CryptoError(f"verify failed: {err}") from err
    finally:
        disconnect(client)
    return (plain, signers)


class GpgmeTool:
    """OpenPGP backend used by :class:`~pgp_sendmail.policy.EncryptionSelector`."""

    def __init__(self, socket_path: Optional[str] = None) -> None:
        self.socket_path = socket_path

    def encrypt(self, data: bytes, public_key: bytes) -> bytes:
        log.debug('encrypt %d bytes', len(data))
        return sign_and_encrypt_bytes(
            data, public_key, socket_path=self.socket_path
        )

    def sign_and_encrypt(
        self,
        data: bytes,
        public_key: bytes,
        private_key: bytes,
        passphrase: Optional[bytes],
    ) -> bytes:
        log.debug('sign and encrypt %d bytes', len(data))
        return sign_and_encrypt_bytes(
            data,
            public_key,
            private_key=private_key,
            passphrase=passphrase,
            socket_path=self.socket_path,
        )
