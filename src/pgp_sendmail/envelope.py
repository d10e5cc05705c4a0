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

"""Turn a sender, recipients, subject and raw body into an :class:`Envelope`.

The raw body is either a complete RFC-822 message or bare text.  Bare
text gets a minimal header block synthesized around it, or PGP/MIME
framing when the subject is the encryption marker.
"""

import base64
import getpass
import logging
import os
import socket
from email.policy import compat32
from email.encoders import encode_7or8bit
from email.generator import BytesGenerator
from email.message import Message
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from io import BytesIO
from typing import (
    Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple
)

from .email import (
    email_sources, email_targets, encode_subject, get_domain, getaddresses,
    parse_address_list, split_message
)
from .errors import InputError
from .policy import MARKER

log = logging.getLogger(__name__)

BOUNDARY = 'ca4'

# no folding, Headers holds one line per field
SMTP_POLICY = compat32.clone(linesep='\r\n', max_line_length=0)

_WELL_KNOWN = {
    'from': 'From', 'to': 'To', 'cc': 'Cc', 'bcc': 'Bcc', 'subject': 'Subject'
}
ADDRESS_FIELDS = ('to', 'cc', 'bcc')


class Config(NamedTuple):
    """Input of :func:`build_envelope`, consumed once per message."""

    sender: Optional[str] = None
    recipients: Sequence[str] = ()
    subject: Optional[str] = None
    body: bytes = b''


class Headers:
    r"""Ordered header block with named access to the well-known fields.

    Every field is serialized on its own line in the order it was
    added.  Repeated ``To``, ``Cc`` and ``Bcc`` fields are the exception:
    they are joined into one comma-separated line at the position of the
    first occurrence.

    >>> headers = Headers()
    >>> headers.to = ['bob@example.com', 'carol@example.com']
    >>> headers['Received'] = 'from a by b'
    >>> headers.from_ = 'alice@example.com'
    >>> headers.add('received', 'from c by d')
    >>> list(headers.items())  # doctest: +NORMALIZE_WHITESPACE
    [('To', 'bob@example.com,carol@example.com'),
     ('Received', 'from a by b'),
     ('From', 'alice@example.com'),
     ('Received', 'from c by d')]
    >>> headers.subject is None
    True
    """

    def __init__(self) -> None:
        self._fields: List[Tuple[str, str]] = []

    @classmethod
    def from_message(cls, message: Message) -> 'Headers':
        headers = cls()
        for name, value in message.items():
            headers.add(name, str(value))
        return headers

    def __contains__(self, name: str) -> bool:
        return any(key == name.lower() for key, _ in self._keyed())

    def __getitem__(self, name: str) -> Optional[str]:
        values = self.get_all(name)
        if not values:
            return None
        return values[0]

    def __setitem__(self, name: str, value: str) -> None:
        self.set_all(name, [value])

    def __delitem__(self, name: str) -> None:
        key = name.lower()
        self._fields = [f for f in self._fields if f[0].lower() != key]

    def __len__(self) -> int:
        return len(self.names())

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {', '.join(self.names())}>"

    def _keyed(self) -> Iterator[Tuple[str, Tuple[str, str]]]:
        for field in self._fields:
            yield (field[0].lower(), field)

    def _spelling(self, name: str) -> str:
        key = name.lower()
        for field_key, (field_name, _) in self._keyed():
            if field_key == key:
                return field_name
        return _WELL_KNOWN.get(key, name)

    def names(self) -> List[str]:
        """Distinct field names in order of first occurrence."""
        seen: Dict[str, str] = {}
        for key, (name, _) in self._keyed():
            seen.setdefault(key, name)
        return list(seen.values())

    def get_all(self, name: str) -> List[str]:
        key = name.lower()
        return [value for k, (_, value) in self._keyed() if k == key]

    def set_all(self, name: str, values: Sequence[str]) -> None:
        """Replace every ``name`` field, keeping the first one's position."""
        key = name.lower()
        name = self._spelling(name)
        index = len(self._fields)
        for i, (k, _) in enumerate(self._keyed()):
            if k == key:
                index = i
                break
        del self[key]
        self._fields[index:index] = [(name, value) for value in values]

    def add(self, name: str, value: str) -> None:
        self._fields.append((self._spelling(name), value))

    def items(self) -> Iterator[Tuple[str, str]]:
        """Yield one ``(name, value)`` per serialized header line."""
        joined = set()
        for key, (name, value) in self._keyed():
            if key not in ADDRESS_FIELDS:
                yield (name, value)
            elif key not in joined:
                joined.add(key)
                yield (name, ','.join(self.get_all(key)))

    @property
    def from_(self) -> Optional[str]:
        return self['From']

    @from_.setter
    def from_(self, value: str) -> None:
        self['From'] = value

    @property
    def to(self) -> List[str]:
        return self.get_all('To')

    @to.setter
    def to(self, values: Sequence[str]) -> None:
        self.set_all('To', values)

    @property
    def cc(self) -> List[str]:
        return self.get_all('Cc')

    @cc.setter
    def cc(self, values: Sequence[str]) -> None:
        self.set_all('Cc', values)

    @property
    def bcc(self) -> List[str]:
        return self.get_all('Bcc')

    @bcc.setter
    def bcc(self, values: Sequence[str]) -> None:
        self.set_all('Bcc', values)

    @property
    def subject(self) -> Optional[str]:
        return self['Subject']

    @subject.setter
    def subject(self, value: str) -> None:
        self['Subject'] = value


class Envelope:
    """A message ready for delivery."""

    def __init__(
        self, headers: Headers, body: bytes, recipients: Sequence[str]
    ) -> None:
        if not recipients:
            raise InputError('no recipients listed')
        self.headers = headers
        self.body = body
        self.recipients = list(recipients)

    def __repr__(self) -> str:
        return (f"<{type(self).__name__} {self.sender} -> "
                f"{', '.join(self.recipients)}>")

    @property
    def sender(self) -> str:
        """The bare address of the first ``From`` entry."""
        value = self.headers.from_
        if not value:
            return ''
        for _, address in getaddresses([value]):
            if address:
                return address
        return value

    def as_bytes(self) -> bytes:
        r"""Serialize with CRLF line endings and without ``Bcc``.

        >>> headers = Headers()
        >>> headers.from_ = 'alice@example.com'
        >>> headers.to = ['bob@example.com']
        >>> headers.bcc = ['eve@example.com']
        >>> Envelope(headers, b'hello', ['bob@example.com']).as_bytes()
        b'From: alice@example.com\r\nTo: bob@example.com\r\n\r\nhello\r\n'
        """
        buf = BytesIO()
        for name, value in self.headers.items():
            if name.lower() == 'bcc':
                continue
            buf.write(f"{name}: {value}\r\n".encode('utf-8'))
        buf.write(b'\r\n')
        buf.write(self.body)
        if not self.body.endswith(b'\n'):
            buf.write(b'\r\n')
        return buf.getvalue()


def _flatten(message: Message) -> bytes:
    bytesio = BytesIO()
    generator = BytesGenerator(bytesio, policy=SMTP_POLICY)
    generator.flatten(message)
    return bytesio.getvalue()


def pgp_mime(body: bytes) -> bytes:
    r"""Wrap an armored message in ``multipart/encrypted`` framing.

    multipart/encrypted
    +-> application/pgp-encrypted  (control information)
    +-> application/octet-stream   (body)

    >>> print(pgp_mime(b'-----BEGIN PGP MESSAGE-----\n...\n').decode()
    ...       .replace('\r\n', '\n'))  # doctest: +REPORT_UDIFF
    Content-Type: multipart/encrypted; protocol="application/pgp-encrypted"; boundary="ca4"
    MIME-Version: 1.0
    <BLANKLINE>
    --ca4
    Content-Type: application/pgp-encrypted
    MIME-Version: 1.0
    Content-Transfer-Encoding: 7bit
    <BLANKLINE>
    Version: 1
    <BLANKLINE>
    --ca4
    Content-Type: application/octet-stream
    MIME-Version: 1.0
    Content-Transfer-Encoding: 7bit
    <BLANKLINE>
    -----BEGIN PGP MESSAGE-----
    ...
    <BLANKLINE>
    --ca4--
    <BLANKLINE>
    """
    control = MIMEApplication(
        _data='Version: 1\n', _subtype='pgp-encrypted', _encoder=encode_7or8bit
    )
    enc = MIMEApplication(
        _data=body, _subtype='octet-stream', _encoder=encode_7or8bit
    )
    msg = MIMEMultipart(
        'encrypted',
        boundary=BOUNDARY,
        protocol='application/pgp-encrypted',
    )
    msg.attach(control)
    msg.attach(enc)
    return _flatten(msg)


def dumb_message(
    sender: Optional[str],
    recipients: Sequence[str],
    subject: Optional[str],
    body: bytes,
) -> Tuple[Headers, bytes]:
    """Synthesize a header block for a bare ``body``.

    >>> headers, body = dumb_message(
    ...     'alice@example.com', ['bob@example.com', 'carol@example.com'],
    ...     None, b'hello')
    >>> list(headers.items())
    [('From', 'alice@example.com'), ('To', 'bob@example.com,carol@example.com')]
    >>> body
    b'hello'
    """
    if not recipients:
        raise InputError('empty recipients list')
    if subject == MARKER:
        log.debug('%s subject, switching to multipart', MARKER)
        message, body = split_message(pgp_mime(body))
        headers = Headers()
        if sender:
            headers.from_ = sender
        headers.to = [','.join(recipients)]
        for name, value in message.items():
            headers.add(name, value)
        return (headers, body)

    headers = Headers()
    if sender:
        headers.from_ = sender
    headers.to = [','.join(recipients)]
    return (headers, body)


def default_sender() -> Optional[str]:
    """Return ``user@hostname`` for the current process, if known."""
    try:
        user = getpass.getuser()
        hostname = socket.gethostname()
    except (KeyError, OSError) as err:
        log.warning('cannot determine default sender: %s', err)
        return None
    return f"{user}@{hostname}"


def resolve_sender(config: Config) -> Optional[str]:
    r"""Explicit sender, then the ``From`` header, then ``user@hostname``.

    >>> resolve_sender(Config(sender='alice@example.com'))
    'alice@example.com'
    >>> resolve_sender(Config(body=b'From: Bob <bob@example.com>\n\nhi\n'))
    'bob@example.com'
    """
    if config.sender:
        return config.sender
    header, _ = split_message(config.body)
    if header is not None:
        sources = email_sources(header)
        if sources and sources[0][1]:
            return sources[0][1]
    return default_sender()


def resolve_recipients(config: Config) -> List[str]:
    r"""Explicit recipients, else ``To``, ``Cc`` and ``Bcc`` of the body.

    Explicit recipients that fail to parse yield an empty list rather
    than an error.

    >>> resolve_recipients(Config(recipients=['bob@example.com']))
    ['bob@example.com']
    >>> resolve_recipients(Config(recipients=['bob']))
    []
    >>> resolve_recipients(Config(body=b'To: bob@example.com\nCc: c@d.org\n\nhi'))
    ['bob@example.com', 'c@d.org']
    """
    if config.recipients:
        try:
            return parse_address_list(config.recipients)
        except ValueError as err:
            log.warning('ignoring recipients: %s', err)
            return []
    header, _ = split_message(config.body)
    if header is None:
        return []
    return email_targets(header)


def generate_message_id(domain: str) -> str:
    token = base64.urlsafe_b64encode(os.urandom(16)).rstrip(b'=')
    return f"<{token.decode('ascii')}@{domain}>"


def build_envelope(config: Config) -> Envelope:
    """Build the :class:`Envelope` described by ``config``."""
    if not config.body:
        raise InputError('empty message body')

    header, body = split_message(config.body)
    if header is None:
        if not config.recipients:
            raise InputError(
                'message has no header block and no recipients were given'
            )
        headers, body = dumb_message(
            config.sender, config.recipients, config.subject, config.body
        )
    else:
        headers = Headers.from_message(header)
    if not body:
        raise InputError('message has a header block but no body')

    sender = resolve_sender(config)
    if config.sender or not headers.from_:
        if sender:
            headers.from_ = sender

    if config.subject:
        headers.subject = encode_subject(config.subject)

    recipients = resolve_recipients(config)
    if not recipients:
        raise InputError('no recipients listed')

    if 'Message-ID' not in headers:
        headers['Message-ID'] = generate_message_id(
            get_domain(sender or '') or socket.gethostname()
        )
    return Envelope(headers, body, recipients)
