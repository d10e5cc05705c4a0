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

"""Sendmail-compatible command line front end.

Reads a message from standard input and sends it to the recipients
named on the command line, encrypting it first when the key store has
a public key for the first recipient.  With ``--smtp`` or ``--http``
it runs as a daemon instead.

The signing identity and its passphrase are taken from the
``SENDMAIL_SMART_LOGIN`` and ``SENDMAIL_SECRET`` environment
variables.
"""

import argparse
import asyncio
import logging
import sys
from typing import BinaryIO, List, Optional

from . import __version__
from .config import CONFIG_PATH, read_settings
from .envelope import Config
from .errors import SendmailError
from .pipeline import Pipeline, Settings
from .server import HTTP_BIND, SMTP_BIND, serve

log = logging.getLogger(__name__)


def read_body(stream: BinaryIO, ignore_dot: bool = False) -> bytes:
    r"""Read a message body, stopping at a lone ``.`` unless ``ignore_dot``.

    >>> from io import BytesIO
    >>> read_body(BytesIO(b'hello\n.\nignored\n'))
    b'hello\n'
    >>> read_body(BytesIO(b'hello\n.\nkept\n'), ignore_dot=True)
    b'hello\n.\nkept\n'
    """
    lines = []
    for line in stream:
        if not ignore_dot and line.rstrip(b'\r\n') == b'.':
            break
        lines.append(line)
    return b''.join(lines)


def get_parser() -> argparse.ArgumentParser:
    doc_lines = __doc__.splitlines()
    parser = argparse.ArgumentParser(
        prog='pgp-sendmail',
        description=doc_lines[0],
        epilog='\n'.join(doc_lines[1:]).strip(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        '--version',
        action='version',
        version='%(prog)s {}'.format(__version__),
    )
    parser.add_argument(
        '-t',
        dest='ignored',
        action='store_true',
        help='extract recipients from message headers (ignored)',
    )
    parser.add_argument(
        '-i',
        dest='ignore_dot',
        action='store_true',
        help="don't treat a line with only a . character as the end of input",
    )
    parser.add_argument(
        '-v',
        dest='verbose',
        action='store_true',
        help='enable verbose logging for debugging purposes',
    )
    parser.add_argument(
        '-f',
        dest='sender',
        metavar='SENDER',
        help='set the envelope sender address',
    )
    parser.add_argument(
        '-s',
        dest='subject',
        metavar='SUBJECT',
        help='specify subject on command line',
    )
    parser.add_argument(
        '-c',
        '--config',
        metavar='FILE',
        default=CONFIG_PATH,
        help='configuration file',
    )
    parser.add_argument(
        '--http',
        action='store_true',
        help='enable HTTP server mode',
    )
    parser.add_argument(
        '--http-bind',
        metavar='ADDR',
        help=f"TCP address to listen on for HTTP (default {HTTP_BIND})",
    )
    parser.add_argument(
        '--http-token',
        metavar='TOKEN',
        help='require this authorization token (Token: header)',
    )
    parser.add_argument(
        '--smtp',
        action='store_true',
        help='enable SMTP server mode',
    )
    parser.add_argument(
        '--smtp-bind',
        metavar='ADDR',
        help=f"TCP address to listen on for SMTP (default {SMTP_BIND})",
    )
    parser.add_argument(
        '--sender-domain',
        metavar='DOMAIN',
        action='append',
        default=[],
        help='domain of the sender from which mail is allowed '
        '(otherwise all domains); may be repeated',
    )
    parser.add_argument(
        'recipients',
        metavar='RECIPIENT',
        nargs='*',
        help='recipient addresses',
    )
    return parser


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    """Let command line values override the configuration file."""
    changes = {'verbose': args.verbose}
    if args.sender_domain:
        changes['sender_domains'] = tuple(args.sender_domain)
    if args.http_bind:
        changes['http_bind'] = args.http_bind
    if args.http_token:
        changes['http_token'] = args.http_token
    if args.smtp_bind:
        changes['smtpd_bind'] = args.smtp_bind
    return settings._replace(**changes)


def run_daemon(pipeline: Pipeline, args: argparse.Namespace) -> int:
    settings = pipeline.settings
    smtp_bind = (settings.smtpd_bind or SMTP_BIND) if args.smtp else None
    http_bind = (settings.http_bind or HTTP_BIND) if args.http else None
    try:
        asyncio.run(serve(
            pipeline,
            smtp_bind=smtp_bind,
            http_bind=http_bind,
            http_token=settings.http_token,
        ))
    except KeyboardInterrupt:
        log.info('shutting down')
    return 0


def run_submit(
    pipeline: Pipeline, args: argparse.Namespace, stdin: BinaryIO
) -> int:
    if stdin.isatty():
        log.error('no stdin input')
        return 1
    body = read_body(stdin, ignore_dot=args.ignore_dot)
    if len(args.recipients) > 1:
        log.debug('multiple recipients: %s', ', '.join(args.recipients))
    config = Config(
        sender=args.sender or pipeline.settings.sender_identity,
        recipients=args.recipients,
        subject=args.subject,
        body=body,
    )
    pipeline.submit(config)
    return 0


def main(argv: Optional[List[str]] = None,
         stdin: Optional[BinaryIO] = None) -> int:
    parser = get_parser()
    args = parser.parse_args(argv)

    package_log = logging.getLogger('pgp_sendmail')
    package_log.setLevel(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        settings = apply_args(read_settings(args.config), args)
        pipeline = Pipeline(settings)
        if args.smtp or args.http:
            return run_daemon(pipeline, args)
        if stdin is None:
            stdin = sys.stdin.buffer
        return run_submit(pipeline, args, stdin)
    except SendmailError as err:
        log.error('%s', err)
        return 1


if __name__ == '__main__':
    sys.exit(main())
