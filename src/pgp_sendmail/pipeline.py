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

"""Process one message end to end.

Order of operations:

1. resolve the sender and check it against the allow-list
2. reject empty bodies and empty recipient lists
3. decide on encryption (key store lookups happen here)
4. build the envelope
5. dispatch and drain the results

Steps 1 and 2 touch neither the key store nor the network.  A fatal
delivery result raises :class:`~pgp_sendmail.errors.DeliveryError` for
this message only.
"""

import logging
from email.errors import MessageError
from email.header import decode_header, make_header
from typing import List, NamedTuple, Optional, Sequence, Tuple

from .crypt import GpgmeTool
from .email import split_message
from .envelope import (
    Config, Envelope, build_envelope, resolve_recipients, resolve_sender
)
from .errors import InputError
from .guard import authorize
from .keystore import KEYS_DIR, KeyStore
from .policy import MARKER, EncryptionSelector, MarkerTrigger, SubjectTrigger
from .result import Level, ResultReporter
from .smtp import DirectDispatcher, Dispatcher, RelayDispatcher, SmtpParams

log = logging.getLogger(__name__)


class Settings(NamedTuple):
    """Immutable configuration shared by every ingestion path."""

    keys_dir: str = KEYS_DIR
    sender_domains: Tuple[str, ...] = ()
    sender_identity: Optional[str] = None
    passphrase: Optional[bytes] = None
    per_recipient: bool = False
    double_wrap: bool = True
    verbose: bool = False
    socket_path: Optional[str] = None
    smtp: SmtpParams = (None, None, None, None, None)
    smtpd_bind: Optional[str] = None
    http_bind: Optional[str] = None
    http_token: Optional[str] = None


class Outcome(NamedTuple):
    """What happened to one message."""

    envelopes: List[Envelope]
    level: Level


def decoded_subject(data: bytes) -> Optional[str]:
    r"""Return the decoded ``Subject`` of a raw message, if any.

    >>> decoded_subject(b'Subject: =?utf-8?b?SGVsbG8=?=\r\n\r\nbody')
    'Hello'
    >>> decoded_subject(b'Subject: =?x-unknown?b?SGk=?=\r\n\r\nbody')
    '=?x-unknown?b?SGk=?='
    >>> decoded_subject(b'just text') is None
    True
    """
    header, _ = split_message(data)
    if header is None or header['Subject'] is None:
        return None
    try:
        return str(make_header(decode_header(header['Subject'])))
    except (LookupError, UnicodeError, MessageError) as err:
        log.warning('cannot decode subject: %s', err)
        return str(header['Subject'])


class Pipeline:
    """Run messages through encryption, envelope assembly and delivery."""

    def __init__(
        self,
        settings: Settings,
        keystore: Optional[KeyStore] = None,
        crypt=None,
        dispatcher: Optional[Dispatcher] = None,
        reporter: Optional[ResultReporter] = None,
    ) -> None:
        if keystore is None:
            keystore = KeyStore(settings.keys_dir)
        if crypt is None:
            crypt = GpgmeTool(socket_path=settings.socket_path)
        if dispatcher is None:
            if settings.smtp[0]:
                dispatcher = RelayDispatcher(*settings.smtp)
            else:
                dispatcher = DirectDispatcher()
        if reporter is None:
            reporter = ResultReporter(verbose=settings.verbose)
        self.settings = settings
        self.keystore = keystore
        self.crypt = crypt
        self.dispatcher = dispatcher
        self.reporter = reporter

    def selector(self, trigger) -> EncryptionSelector:
        return EncryptionSelector(
            self.keystore,
            self.crypt,
            trigger=trigger,
            sender_identity=self.settings.sender_identity,
            passphrase=self.settings.passphrase,
        )

    def submit(self, config: Config) -> Outcome:
        """Command-line and HTTP submission."""
        return self._process(config, self.selector(MarkerTrigger()), None)

    def receive(
        self, sender: str, recipients: Sequence[str], data: bytes
    ) -> Outcome:
        """Inbound SMTP: the parsed subject drives the policy match."""
        wraps = 2 if self.settings.double_wrap else 1
        config = Config(sender=sender, recipients=list(recipients), body=data)
        return self._process(
            config, self.selector(SubjectTrigger(wraps)), decoded_subject(data)
        )

    def authorize(self, sender: Optional[str]) -> None:
        authorize(sender or '', self.settings.sender_domains)

    def _groups(self, recipients: List[str]) -> List[List[str]]:
        if self.settings.per_recipient:
            return [[recipient] for recipient in recipients]
        if len(recipients) > 1:
            log.debug(
                'multiple recipients, encryption keyed to %s', recipients[0]
            )
        return [recipients]

    def _process(
        self,
        config: Config,
        selector: EncryptionSelector,
        subject: Optional[str],
    ) -> Outcome:
        sender = resolve_sender(config)
        self.authorize(sender)

        if not config.body:
            raise InputError('empty message body')
        recipients = resolve_recipients(config)
        if not recipients:
            raise InputError('no recipients listed')

        envelopes = []
        worst = Level.INFO
        for group in self._groups(recipients):
            decision = selector.decide(group[0], subject, config.body)
            # an encrypted body no longer carries the original From
            envelope = build_envelope(Config(
                sender=sender if decision.encrypted else config.sender,
                recipients=group,
                subject=MARKER if decision.encrypted else config.subject,
                body=decision.body,
            ))
            log.info(
                'dispatch %s (encrypted=%s, signed=%s)',
                envelope, decision.encrypted, decision.signed,
            )
            worst = min(
                worst, self.reporter.drain(self.dispatcher.send(envelope))
            )
            envelopes.append(envelope)
        return Outcome(envelopes, worst)
