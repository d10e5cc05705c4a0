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

import asyncio
import smtplib

import pytest
from aiohttp.test_utils import TestClient, TestServer
from aiosmtpd.smtp import Envelope as SMTPEnvelope

from pgp_sendmail.errors import CryptoError
from pgp_sendmail.result import Level, Result
from pgp_sendmail.server import (
    MAX_RECIPIENTS, SMTPHandler, make_app, start_smtp
)

MESSAGE = (
    b'From: alice@example.com\r\n'
    b'To: bob@example.com\r\n'
    b'Subject: hi\r\n'
    b'\r\n'
    b'hello\r\n'
)


async def test_mail_from_checks_allow_list(make_pipeline):
    handler = SMTPHandler(make_pipeline(sender_domains=('example.com',)))
    envelope = SMTPEnvelope()
    reply = await handler.handle_MAIL(
        None, None, envelope, 'mallory@evil.org', []
    )
    assert reply.startswith('550 ')
    assert 'evil.org' in reply
    assert envelope.mail_from is None

    reply = await handler.handle_MAIL(
        None, None, envelope, 'alice@example.com', []
    )
    assert reply == '250 OK'
    assert envelope.mail_from == 'alice@example.com'


async def test_rcpt_splits_and_limits(make_pipeline):
    handler = SMTPHandler(make_pipeline())
    envelope = SMTPEnvelope()
    reply = await handler.handle_RCPT(
        None, None, envelope, 'bob@example.com,carol@example.org', []
    )
    assert reply == '250 OK'
    assert envelope.rcpt_tos == ['bob@example.com', 'carol@example.org']

    envelope.rcpt_tos = ['r%d@example.com' % i for i in range(MAX_RECIPIENTS)]
    reply = await handler.handle_RCPT(
        None, None, envelope, 'one-too-many@example.com', []
    )
    assert reply.startswith('452 ')


async def test_data_runs_inbound_pipeline(make_pipeline, dispatcher):
    handler = SMTPHandler(make_pipeline())
    envelope = SMTPEnvelope()
    envelope.mail_from = 'alice@example.com'
    envelope.rcpt_tos = ['bob@example.com']
    envelope.content = envelope.original_content = MESSAGE
    reply = await handler.handle_DATA(None, None, envelope)
    assert reply.startswith('250 ')
    sent, = dispatcher.envelopes
    assert sent.recipients == ['bob@example.com']
    assert sent.body == b'hello\r\n'


async def test_data_fatal_result_fails_only_the_session(make_pipeline,
                                                       dispatcher):
    dispatcher.results = [Result(Level.FATAL, 'no more MX hosts')]
    handler = SMTPHandler(make_pipeline())
    envelope = SMTPEnvelope()
    envelope.mail_from = 'alice@example.com'
    envelope.rcpt_tos = ['bob@example.com']
    envelope.content = envelope.original_content = MESSAGE
    reply = await handler.handle_DATA(None, None, envelope)
    assert reply == '554 5.0.0 no more MX hosts'

    dispatcher.results = [Result(Level.INFO, 'send mail OK')]
    assert (await handler.handle_DATA(None, None, envelope)).startswith('250')


async def test_data_crypto_failure_is_temporary(make_pipeline, write_key,
                                                crypt):
    write_key('bob@example.com', '.pgp', b'BOBKEY')
    crypt.fail = CryptoError('gpgme-tool went away')
    handler = SMTPHandler(make_pipeline())
    envelope = SMTPEnvelope()
    envelope.mail_from = 'alice@example.com'
    envelope.rcpt_tos = ['bob@example.com']
    envelope.content = envelope.original_content = MESSAGE
    reply = await handler.handle_DATA(None, None, envelope)
    assert reply.startswith('451 ')


async def test_data_with_undecodable_subject(make_pipeline, dispatcher):
    handler = SMTPHandler(make_pipeline())
    envelope = SMTPEnvelope()
    envelope.mail_from = 'alice@example.com'
    envelope.rcpt_tos = ['bob@example.com']
    envelope.content = envelope.original_content = MESSAGE.replace(
        b'Subject: hi', b'Subject: =?x-unknown?b?SGk=?='
    )
    reply = await handler.handle_DATA(None, None, envelope)
    assert reply.startswith('250 ')
    assert len(dispatcher.envelopes) == 1


async def test_smtp_session(make_pipeline, dispatcher):
    server = await start_smtp(
        make_pipeline(sender_domains=('example.com',)), '127.0.0.1:0'
    )
    port = server.sockets[0].getsockname()[1]

    def session():
        with smtplib.SMTP('127.0.0.1', port) as client:
            client.sendmail('alice@example.com', ['bob@example.com'], MESSAGE)
            with pytest.raises(smtplib.SMTPSenderRefused):
                client.sendmail('mallory@evil.org', ['bob@example.com'],
                                MESSAGE)

    try:
        await asyncio.get_running_loop().run_in_executor(None, session)
    finally:
        server.close()
        await server.wait_closed()
    sent, = dispatcher.envelopes
    assert sent.sender == 'alice@example.com'


async def test_http_submission(make_pipeline, dispatcher):
    app = make_app(make_pipeline(), token='s3cr3t')
    async with TestClient(TestServer(app)) as client:
        resp = await client.post(
            '/',
            params=[('to', 'bob@example.com'), ('to', 'carol@example.org'),
                    ('from', 'alice@example.com')],
            data=b'hello',
            headers={'Token': 's3cr3t'},
        )
        assert resp.status == 202
        assert await resp.json() == {
            'status': 'sent',
            'level': 'INFO',
            'recipients': ['bob@example.com', 'carol@example.org'],
        }
    sent, = dispatcher.envelopes
    assert sent.body == b'hello'
    assert sent.sender == 'alice@example.com'


async def test_http_rejects_bad_token(make_pipeline, dispatcher):
    app = make_app(make_pipeline(), token='s3cr3t')
    async with TestClient(TestServer(app)) as client:
        resp = await client.post('/?to=bob@example.com', data=b'hello')
        assert resp.status == 401
        resp = await client.post(
            '/?to=bob@example.com', data=b'hello', headers={'Token': 'nope'}
        )
        assert resp.status == 401
    assert dispatcher.envelopes == []


async def test_http_errors(make_pipeline, dispatcher):
    app = make_app(make_pipeline(sender_domains=('example.com',)))
    async with TestClient(TestServer(app)) as client:
        resp = await client.post(
            '/?to=bob@example.com&from=mallory@evil.org', data=b'hello'
        )
        assert resp.status == 403
        resp = await client.post('/?from=alice@example.com', data=b'hello')
        assert resp.status == 400
        assert (await resp.json())['status'] == 'error'

        dispatcher.results = [Result(Level.FATAL, 'no more MX hosts')]
        resp = await client.post(
            '/?to=bob@example.com&from=alice@example.com', data=b'hello'
        )
        assert resp.status == 502
        assert (await resp.json())['error'] == 'no more MX hosts'
