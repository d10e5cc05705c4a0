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

from pgp_sendmail.config import load_settings, read_settings
from pgp_sendmail.pipeline import Settings

CONFIG = """\
[sendmail]
keys-dir: /srv/keys
sender-domains: example.com, example.org
per-recipient: yes
double-wrap: no

[smtp]
host: smtp.example.com
port: 587
starttls: yes
username: relay
password: hunter2

[gpgme-tool]
socket-path: /tmp/S.gpgme-tool

[smtpd]
bind: 0.0.0.0:25

[http]
bind: 0.0.0.0:8080
token: s3cr3t
"""


def test_read_full_configuration(tmp_path):
    path = tmp_path / 'pgp-sendmail.conf'
    path.write_text(CONFIG)
    settings = read_settings(str(path), {
        'SENDMAIL_SMART_LOGIN': 'relay@example.com',
        'SENDMAIL_SECRET': 'pässword',
    })
    assert settings == Settings(
        keys_dir='/srv/keys',
        sender_domains=('example.com', 'example.org'),
        sender_identity='relay@example.com',
        passphrase='pässword'.encode('utf-8'),
        per_recipient=True,
        double_wrap=False,
        socket_path='/tmp/S.gpgme-tool',
        smtp=('smtp.example.com', 587, True, 'relay', 'hunter2'),
        smtpd_bind='0.0.0.0:25',
        http_bind='0.0.0.0:8080',
        http_token='s3cr3t',
    )


def test_missing_file_gives_defaults(tmp_path):
    settings = read_settings(str(tmp_path / 'absent.conf'), {})
    assert settings == Settings()


def test_empty_secret_is_kept():
    from configparser import ConfigParser
    settings = load_settings(ConfigParser(), {'SENDMAIL_SECRET': ''})
    assert settings.passphrase == b''
