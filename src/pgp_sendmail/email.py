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

"""Address and header helpers.

None of these functions raise on garbage unless asked to; the envelope
builder decides how strict to be.
"""

import re
from email.charset import BASE64, Charset
from email.errors import MissingHeaderBodySeparatorDefect
from email.header import Header, decode_header
from email.message import Message
from email.parser import BytesParser, Parser
from email.utils import getaddresses as _getaddresses
from typing import Generator, Iterable, List, Optional, Tuple

ENCODING = 'utf-8'

_ADDRESS_RE = re.compile(r'^[^@\s]+@[^@\s]+$')


def get_domain(address: str) -> str:
    """Return the part of ``address`` after its single ``@``.

    Anything else yields an empty string rather than an error.

    >>> get_domain('bob@example.com')
    'example.com'
    >>> get_domain('bob')
    ''
    >>> get_domain('bob@example.com@other')
    ''
    """
    components = address.split('@')
    if len(components) == 2:
        return components[1]
    return ''


def header_from_text(text: str) -> Message:
    r"""Simple wrapper for instantiating a ``Message`` from text.

    >>> text = '\n'.join(
    ...     ['From: me@big.edu', 'To: you@big.edu', 'Subject: testing']
    ... )
    >>> header = header_from_text(text=text)
    >>> print(header.as_string())  # doctest: +REPORT_UDIFF
    From: me@big.edu
    To: you@big.edu
    Subject: testing
    <BLANKLINE>
    <BLANKLINE>
    """
    text = text.strip()
    return Parser().parsestr(text, headersonly=True)


def getaddresses(addresses: Iterable[str]) -> Generator[
    Tuple[str, str], None, None
]:
    """A decoding version of ``email.utils.getaddresses``.

    >>> text = ('To: =?utf-8?b?0JTQttC+0L0g0JTQvtGD?= <jdoe@a.gov.ru>, '
    ...     'Jack <jack@hill.org>')
    >>> header = header_from_text(text=text)
    >>> list(getaddresses(header.get_all('to', [])))
    [('Джон Доу', 'jdoe@a.gov.ru'), ('Jack', 'jack@hill.org')]
    """
    for name, address in _getaddresses(list(addresses)):
        decoded = []
        for chunk, encoding in decode_header(name):
            if isinstance(chunk, bytes):
                chunk = str(chunk, encoding or 'us-ascii', 'replace')
            decoded.append(chunk)
        yield (' '.join(decoded), address)


def parse_address_list(values: Iterable[str]) -> List[str]:
    """Parse comma separated address lists into bare addresses.

    Unlike ``email.utils.getaddresses`` this refuses entries that are not
    of the form ``local@domain``.

    >>> parse_address_list(['Bob <bob@example.com>, carol@example.org'])
    ['bob@example.com', 'carol@example.org']
    >>> parse_address_list(['bob@example.com', 'dave@example.net'])
    ['bob@example.com', 'dave@example.net']
    >>> parse_address_list(['not an address'])
    Traceback (most recent call last):
      ...
    ValueError: invalid address 'not an address'
    """
    addresses = []
    for value in values:
        for name, address in getaddresses([value]):
            if not _ADDRESS_RE.match(address):
                raise ValueError(f"invalid address {value!r}")
            addresses.append(address)
    return addresses


def email_sources(message: Message) -> List[Tuple[str, str]]:
    """Extract author addresses from an email ``Message``.

    >>> header = header_from_text('From: Jack <jack@hill.org>')
    >>> email_sources(header)
    [('Jack', 'jack@hill.org')]
    """
    return list(getaddresses(message.get_all('from', [])))


def email_targets(message: Message) -> List[str]:
    r"""Collect recipient addresses from ``To``, ``Cc`` and ``Bcc``.

    Order is kept and duplicates are not removed.  Fields that fail to
    parse are skipped.

    >>> text = '\n'.join([
    ...     'To: Jack <jack@hill.org>',
    ...     'Cc: jill@hill.org',
    ...     'Bcc: jack@hill.org'])
    >>> email_targets(header_from_text(text))
    ['jack@hill.org', 'jill@hill.org', 'jack@hill.org']
    """
    targets = []
    for field in ('to', 'cc', 'bcc'):
        values = message.get_all(field, [])
        if not values:
            continue
        try:
            targets.extend(parse_address_list(values))
        except ValueError:
            continue
    return targets


def split_message(raw: bytes) -> Tuple[Optional[Message], bytes]:
    r"""Split ``raw`` into a parsed header block and the raw body bytes.

    Returns ``(None, raw)`` when ``raw`` does not look like an RFC-822
    message: at least one header followed by a blank line.

    >>> header, body = split_message(b'To: bob@example.com\r\n\r\nhello\r\n')
    >>> header['To'], body
    ('bob@example.com', b'hello\r\n')
    >>> split_message(b'hello')
    (None, b'hello')
    >>> split_message(b'Note: call me back\n')
    (None, b'Note: call me back\n')
    >>> split_message(b'-----BEGIN PGP MESSAGE-----\n\nxyz\n')[0] is None
    True
    """
    header = BytesParser().parsebytes(raw, headersonly=True)
    if not header.keys():
        return (None, raw)
    if any(isinstance(d, MissingHeaderBodySeparatorDefect)
           for d in header.defects):
        return (None, raw)
    separators = [
        (index, sep) for sep in (b'\r\n\r\n', b'\n\n')
        for index in [raw.find(sep)] if index >= 0
    ]
    if not separators:
        return (None, raw)
    index, sep = min(separators)
    return (header, raw[index + len(sep):])


def encode_subject(subject: str) -> str:
    """MIME-encode ``subject`` as UTF-8 with base64 encoded-words.

    >>> encode_subject('Hello')
    '=?utf-8?b?SGVsbG8=?='
    >>> encode_subject('Привет')
    '=?utf-8?b?0J/RgNC40LLQtdGC?='
    """
    charset = Charset(ENCODING)
    charset.header_encoding = BASE64
    return Header(subject, charset).encode()
