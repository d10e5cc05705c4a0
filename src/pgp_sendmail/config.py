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

"""Build :class:`~pgp_sendmail.pipeline.Settings` from a config file.

Example::

  [sendmail]
  keys-dir: /keys
  sender-domains: example.com, example.org
  per-recipient: no
  double-wrap: yes

  [smtp]
  host: smtp.example.com
  port: 587
  starttls: yes

  [gpgme-tool]
  socket-path: /run/user/1000/gnupg/S.gpgme-tool

  [smtpd]
  bind: localhost:25

  [http]
  bind: localhost:8080
  token: s3cr3t

The signing identity and passphrase come from the environment
(``SENDMAIL_SMART_LOGIN`` and ``SENDMAIL_SECRET``).
"""

import logging
import os
from configparser import ConfigParser, NoOptionError, NoSectionError
from typing import Mapping, Optional, Tuple

from .crypt import get_client_params
from .keystore import KEYS_DIR
from .pipeline import Settings
from .smtp import get_smtp_params

log = logging.getLogger(__name__)

CONFIG_PATH = os.path.expanduser(
    os.path.join('~', '.config', 'pgp-sendmail.conf')
)

SENDER_ENV = 'SENDMAIL_SMART_LOGIN'
SECRET_ENV = 'SENDMAIL_SECRET'


def _get(config: ConfigParser, section: str, option: str,
         default: Optional[str] = None) -> Optional[str]:
    try:
        return config.get(section, option)
    except (NoSectionError, NoOptionError):
        return default


def _getboolean(config: ConfigParser, section: str, option: str,
                default: bool) -> bool:
    try:
        return config.getboolean(section, option)
    except (NoSectionError, NoOptionError):
        return default


def split_domains(value: Optional[str]) -> Tuple[str, ...]:
    """Split a comma or whitespace separated domain list.

    >>> split_domains('example.com, example.org')
    ('example.com', 'example.org')
    >>> split_domains(None)
    ()
    """
    if not value:
        return ()
    return tuple(d for d in value.replace(',', ' ').split() if d)


def load_settings(
    config: ConfigParser, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    r"""Assemble :class:`Settings` from ``config`` and ``environ``.

    >>> config = ConfigParser()
    >>> config.read_string('\n'.join([
    ...     '[sendmail]',
    ...     'keys-dir: /srv/keys',
    ...     'sender-domains: example.com example.org',
    ...     'double-wrap: no',
    ... ]))
    >>> settings = load_settings(config, {'SENDMAIL_SMART_LOGIN': 'me@example.com'})
    >>> settings.keys_dir, settings.sender_domains, settings.double_wrap
    ('/srv/keys', ('example.com', 'example.org'), False)
    >>> settings.sender_identity, settings.passphrase
    ('me@example.com', None)
    >>> load_settings(ConfigParser(), {}).keys_dir
    '/keys'
    """
    if environ is None:
        environ = os.environ
    secret = environ.get(SECRET_ENV)
    return Settings(
        keys_dir=_get(config, 'sendmail', 'keys-dir', KEYS_DIR),
        sender_domains=split_domains(
            _get(config, 'sendmail', 'sender-domains')
        ),
        sender_identity=environ.get(SENDER_ENV) or None,
        passphrase=secret.encode('utf-8') if secret is not None else None,
        per_recipient=_getboolean(config, 'sendmail', 'per-recipient', False),
        double_wrap=_getboolean(config, 'sendmail', 'double-wrap', True),
        socket_path=get_client_params(config)['socket_path'],
        smtp=get_smtp_params(config),
        smtpd_bind=_get(config, 'smtpd', 'bind'),
        http_bind=_get(config, 'http', 'bind'),
        http_token=_get(config, 'http', 'token'),
    )


def read_settings(
    path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Read ``path`` (default ``~/.config/pgp-sendmail.conf``) if present."""
    if path is None:
        path = CONFIG_PATH
    config = ConfigParser()
    read = config.read(path)
    if read:
        log.debug('read configuration from %s', ', '.join(read))
    else:
        log.debug('no configuration at %s, using defaults', path)
    return load_settings(config, environ)
