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

"""Sendmail-compatible relay that encrypts outgoing mail with OpenPGP.

Keys and per-recipient policies live in a directory keyed by hashed
address.  Uses ``assuan`` to connect to ``gpgme-tool`` for the
cryptography.
"""

import logging

from .email import (
    get_domain,
    header_from_text,
    getaddresses,
    parse_address_list,
    email_sources,
    email_targets,
    split_message,
    encode_subject,
)
from .envelope import Config, Envelope, Headers, build_envelope
from .errors import (
    SendmailError,
    InputError,
    AuthorizationError,
    CryptoError,
    DeliveryError,
)
from .guard import authorize
from .keystore import KeyStore, address_hash
from .pipeline import Pipeline, Settings
from .policy import EncryptionSelector, MarkerTrigger, SubjectTrigger
from .result import Level, Result, ResultReporter
from .smtp import (
    get_smtp_params, get_smtp, RelayDispatcher, DirectDispatcher
)

__author__ = 'Jesse P. Johnson'
__author_email__ = 'jpj6652@gmail.com'
__title__ = 'pgp-sendmail'
__description__ = 'An OpenPGP encrypting sendmail replacement.'
__version__ = '0.1'
__license__ = 'GPL-3.0'
__all__ = [
    'get_domain',
    'header_from_text',
    'getaddresses',
    'parse_address_list',
    'email_sources',
    'email_targets',
    'split_message',
    'encode_subject',
    'Config',
    'Envelope',
    'Headers',
    'build_envelope',
    'SendmailError',
    'InputError',
    'AuthorizationError',
    'CryptoError',
    'DeliveryError',
    'authorize',
    'KeyStore',
    'address_hash',
    'Pipeline',
    'Settings',
    'EncryptionSelector',
    'MarkerTrigger',
    'SubjectTrigger',
    'Level',
    'Result',
    'ResultReporter',
    'get_smtp_params',
    'get_smtp',
    'RelayDispatcher',
    'DirectDispatcher',
]


log = logging.getLogger(__name__)
log.setLevel(logging.ERROR)
log.addHandler(logging.StreamHandler())
