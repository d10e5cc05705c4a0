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

from io import BytesIO

import pytest

from pgp_sendmail import cli
from pgp_sendmail.pipeline import Pipeline


class TTY(BytesIO):
    def isatty(self):
        return True


@pytest.fixture
def config_file(tmp_path, keys_dir):
    path = tmp_path / 'pgp-sendmail.conf'
    path.write_text(f"[sendmail]\nkeys-dir: {keys_dir}\n")
    return str(path)


@pytest.fixture(autouse=True)
def fakes(monkeypatch, crypt, dispatcher):
    monkeypatch.delenv('SENDMAIL_SMART_LOGIN', raising=False)
    monkeypatch.delenv('SENDMAIL_SECRET', raising=False)
    monkeypatch.setattr(
        cli, 'Pipeline',
        lambda settings: Pipeline(settings, crypt=crypt, dispatcher=dispatcher),
    )


def test_submits_stdin_until_dot(config_file, dispatcher):
    status = cli.main(
        ['-c', config_file, '-f', 'alice@example.com', 'bob@example.com'],
        stdin=BytesIO(b'hello\n.\nignored\n'),
    )
    assert status == 0
    sent, = dispatcher.envelopes
    assert sent.body == b'hello\n'
    assert sent.sender == 'alice@example.com'
    assert sent.recipients == ['bob@example.com']


def test_ignore_dot_reads_everything(config_file, dispatcher):
    cli.main(
        ['-c', config_file, '-i', '-t', 'bob@example.com'],
        stdin=BytesIO(b'hello\n.\nkept\n'),
    )
    assert dispatcher.envelopes[0].body == b'hello\n.\nkept\n'


def test_subject_flag(config_file, dispatcher):
    cli.main(
        ['-c', config_file, '-s', 'hi', 'bob@example.com'],
        stdin=BytesIO(b'hello\n'),
    )
    assert dispatcher.envelopes[0].headers.subject == '=?utf-8?b?aGk=?='


def test_smart_login_is_default_sender(config_file, dispatcher, crypt,
                                       write_key, monkeypatch):
    monkeypatch.setenv('SENDMAIL_SMART_LOGIN', 'relay@example.com')
    monkeypatch.setenv('SENDMAIL_SECRET', 'pw')
    write_key('bob@example.com', '.pgp', b'BOBKEY')
    write_key('relay@example.com', '.privpgp', b'RELAYKEY')
    cli.main(['-c', config_file, 'bob@example.com'],
             stdin=BytesIO(b'hello\n'))
    assert dispatcher.envelopes[0].sender == 'relay@example.com'
    assert crypt.calls == [
        ('sign_and_encrypt', b'BOBKEY', b'RELAYKEY', b'pw')
    ]


def test_unauthorized_domain_exits_nonzero(config_file, dispatcher):
    status = cli.main(
        ['-c', config_file, '--sender-domain', 'example.com',
         '--sender-domain', 'example.net', '-f', 'mallory@evil.org',
         'bob@example.com'],
        stdin=BytesIO(b'hello\n'),
    )
    assert status == 1
    assert dispatcher.envelopes == []


def test_empty_input_exits_nonzero(config_file, dispatcher):
    assert cli.main(['-c', config_file, 'bob@example.com'],
                    stdin=BytesIO(b'')) == 1


def test_tty_stdin_is_rejected(config_file, dispatcher):
    assert cli.main(['-c', config_file, 'bob@example.com'],
                    stdin=TTY(b'hello\n')) == 1
    assert dispatcher.envelopes == []


def test_daemon_mode(config_file, monkeypatch):
    calls = []

    async def serve(pipeline, smtp_bind=None, http_bind=None,
                    http_token=None):
        calls.append((smtp_bind, http_bind, http_token))

    monkeypatch.setattr(cli, 'serve', serve)
    assert cli.main(['-c', config_file, '--smtp', '--smtp-bind',
                     '127.0.0.1:2525']) == 0
    assert cli.main(['-c', config_file, '--http', '--http-token', 't']) == 0
    assert calls == [
        ('127.0.0.1:2525', None, None),
        (None, 'localhost:8080', 't'),
    ]


def test_command_line_overrides_file(tmp_path):
    path = tmp_path / 'pgp-sendmail.conf'
    path.write_text(
        '[sendmail]\nsender-domains: example.com\n'
        '[http]\nbind: 0.0.0.0:80\ntoken: file\n'
    )
    args = cli.get_parser().parse_args(
        ['-v', '--sender-domain', 'example.org', '--http-token', 'cli']
    )
    settings = cli.apply_args(cli.read_settings(str(path), {}), args)
    assert settings.sender_domains == ('example.org',)
    assert settings.http_bind == '0.0.0.0:80'
    assert settings.http_token == 'cli'
    assert settings.verbose is True
