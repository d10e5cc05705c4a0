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

"""SMTP and HTTP listeners feeding the :class:`~pgp_sendmail.pipeline.Pipeline`.

Both listeners run in one asyncio loop.  The pipeline itself blocks
(key store reads, ``gpgme-tool``, SMTP delivery) and so runs on the
loop's default executor, one message per call.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from aiohttp import web
from aiosmtpd.smtp import SMTP

from .envelope import Config
from .errors import (
    AuthorizationError, CryptoError, DeliveryError, InputError, SendmailError
)

if TYPE_CHECKING:
    from .pipeline import Outcome, Pipeline

log = logging.getLogger(__name__)

DATA_SIZE_LIMIT = 1024 * 1024
MAX_RECIPIENTS = 50
SMTP_HOSTNAME = 'sendmail'

SMTP_BIND = 'localhost:25'
HTTP_BIND = 'localhost:8080'


def split_bind(bind: str, default_port: int) -> Tuple[str, int]:
    """Split ``host:port``, falling back to ``default_port``.

    >>> split_bind('localhost:2525', 25)
    ('localhost', 2525)
    >>> split_bind('[::1]:8080', 80)
    ('::1', 8080)
    >>> split_bind('0.0.0.0', 25)
    ('0.0.0.0', 25)
    """
    host, sep, port = bind.rpartition(':')
    if not sep or not port.isdigit():
        return (bind, default_port)
    return (host.strip('[]'), int(port))


def smtp_reply(err: SendmailError) -> str:
    """Map a pipeline error onto an SMTP reply.

    >>> smtp_reply(InputError('no recipients listed'))
    '554 5.6.0 no recipients listed'
    >>> smtp_reply(CryptoError('gpgme-tool produced no output'))
    '451 4.3.0 gpgme-tool produced no output'
    """
    if isinstance(err, AuthorizationError):
        return f"550 5.7.1 {err}"
    if isinstance(err, InputError):
        return f"554 5.6.0 {err}"
    if isinstance(err, CryptoError):
        return f"451 4.3.0 {err}"
    return f"554 5.0.0 {err}"


def _summary(outcome: 'Outcome') -> Dict[str, Any]:
    return {
        'status': 'sent',
        'level': outcome.level.name,
        'recipients': [
            recipient
            for envelope in outcome.envelopes
            for recipient in envelope.recipients
        ],
    }


class SMTPHandler:
    """``aiosmtpd`` handler running inbound mail through the pipeline.

    The sender allow-list is checked at ``MAIL FROM`` so rejected
    sessions never reach ``RCPT TO`` or ``DATA``.
    """

    def __init__(self, pipeline: 'Pipeline') -> None:
        self.pipeline = pipeline

    async def handle_MAIL(self, server, session, envelope, address,
                          mail_options):
        try:
            self.pipeline.authorize(address)
        except AuthorizationError as err:
            return smtp_reply(err)
        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)
        return '250 OK'

    async def handle_RCPT(self, server, session, envelope, address,
                          rcpt_options):
        recipients = [a.strip() for a in address.split(',') if a.strip()]
        if len(envelope.rcpt_tos) + len(recipients) > MAX_RECIPIENTS:
            return '452 4.5.3 Too many recipients'
        envelope.rcpt_tos.extend(recipients)
        envelope.rcpt_options.extend(rcpt_options)
        return '250 OK'

    async def handle_DATA(self, server, session, envelope):
        data = envelope.original_content or envelope.content
        if isinstance(data, str):
            data = data.encode('utf-8', 'surrogateescape')
        log.info('processing message from %s to %s',
                 envelope.mail_from, ', '.join(envelope.rcpt_tos))
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                self.pipeline.receive,
                envelope.mail_from,
                list(envelope.rcpt_tos),
                data,
            )
        except SendmailError as err:
            log.error('message from %s failed: %s', envelope.mail_from, err)
            return smtp_reply(err)
        return '250 Message accepted for delivery'


class HTTPHandler:
    """``POST /`` with a raw message body, submission semantics.

    Recipients come from repeated ``to`` query parameters or, failing
    that, from the message headers.
    """

    def __init__(self, pipeline: 'Pipeline', token: Optional[str] = None
                 ) -> None:
        self.pipeline = pipeline
        self.token = token

    async def post(self, request: web.Request) -> web.Response:
        if self.token and request.headers.get('Token') != self.token:
            log.warning('rejected HTTP submission from %s: bad token',
                        request.remote)
            return web.json_response(
                {'status': 'error', 'error': 'invalid token'}, status=401
            )
        body = await request.read()
        config = Config(
            sender=request.query.get('from') or None,
            recipients=request.query.getall('to', []),
            subject=request.query.get('subject') or None,
            body=body,
        )
        loop = asyncio.get_running_loop()
        try:
            outcome = await loop.run_in_executor(
                None, self.pipeline.submit, config
            )
        except AuthorizationError as err:
            return self._error(err, 403)
        except InputError as err:
            return self._error(err, 400)
        except (CryptoError, DeliveryError) as err:
            return self._error(err, 502)
        return web.json_response(_summary(outcome), status=202)

    def _error(self, err: SendmailError, status: int) -> web.Response:
        log.error('HTTP submission failed: %s', err)
        return web.json_response(
            {'status': 'error', 'error': str(err)}, status=status
        )


def make_app(pipeline: 'Pipeline', token: Optional[str] = None
             ) -> web.Application:
    handler = HTTPHandler(pipeline, token=token)
    app = web.Application(client_max_size=DATA_SIZE_LIMIT)
    app.router.add_post('/', handler.post)
    return app


async def start_smtp(pipeline: 'Pipeline', bind: str = SMTP_BIND
                     ) -> asyncio.AbstractServer:
    host, port = split_bind(bind, 25)
    handler = SMTPHandler(pipeline)
    loop = asyncio.get_running_loop()
    server = await loop.create_server(
        lambda: SMTP(
            handler,
            hostname=SMTP_HOSTNAME,
            data_size_limit=DATA_SIZE_LIMIT,
            decode_data=False,
        ),
        host=host,
        port=port,
    )
    log.info('SMTP server listening on %s:%d', host, port)
    return server


async def start_http(pipeline: 'Pipeline', bind: str = HTTP_BIND,
                     token: Optional[str] = None) -> web.AppRunner:
    host, port = split_bind(bind, 8080)
    runner = web.AppRunner(make_app(pipeline, token=token))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info('HTTP server listening on %s:%d', host, port)
    return runner


async def serve(
    pipeline: 'Pipeline',
    smtp_bind: Optional[str] = None,
    http_bind: Optional[str] = None,
    http_token: Optional[str] = None,
) -> None:
    """Run the enabled listeners until cancelled."""
    servers: List[asyncio.AbstractServer] = []
    runners: List[web.AppRunner] = []
    try:
        if smtp_bind:
            servers.append(await start_smtp(pipeline, smtp_bind))
        if http_bind:
            runners.append(await start_http(pipeline, http_bind, http_token))
        await asyncio.Event().wait()
    finally:
        for server in servers:
            server.close()
            await server.wait_closed()
        for runner in runners:
            await runner.cleanup()
