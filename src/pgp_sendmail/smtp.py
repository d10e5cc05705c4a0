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

"""Hand an :class:`~pgp_sendmail.envelope.Envelope` to the network.

Dispatchers return a lazy sequence of graded
:class:`~pgp_sendmail.result.Result` objects.  They never raise for
delivery problems; those travel in the sequence instead.
"""

import logging
import queue
import smtplib
import ssl
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from configparser import NoOptionError, NoSectionError
from smtplib import SMTP, SMTP_PORT
from typing import (
    TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Tuple
)

import dns.exception
import dns.resolver

from .email import get_domain
from .result import Level, Result

if TYPE_CHECKING:
    from configparser import ConfigParser
    from .envelope import Envelope

log = logging.getLogger(__name__)

SmtpParams = Tuple[
    Optional[str], Optional[int], Optional[bool], Optional[str], Optional[str]
]

_DONE = object()


def get_smtp_params(config: 'ConfigParser') -> SmtpParams:
    r"""Retrieve SMTP paramters from a config file.

    >>> from configparser import ConfigParser
    >>> config = ConfigParser()
    >>> config.read_string(
    ...     '\n'.join(
    ...         [
    ...             '[smtp]',
    ...             'host: smtp.mail.uu.edu',
    ...             'port: 587',
    ...             'starttls: yes',
    ...             'username: rincewind',
    ...             'password: 7ugg@g3',
    ...         ]
    ...     )
    ... )
    >>> get_smtp_params(config)
    ('smtp.mail.uu.edu', 587, True, 'rincewind', '7ugg@g3')

    >>> get_smtp_params(ConfigParser())
    (None, None, None, None, None)
    """
    try:
        host = config.get('smtp', 'host')
    except NoSectionError:
        return (None, None, None, None, None)
    except NoOptionError:
        host = None

    try:
        port = config.getint('smtp', 'port')
    except NoOptionError:
        port = None

    try:
        starttls = config.getboolean('smtp', 'starttls')
    except NoOptionError:
        starttls = None

    try:
        username = config.get('smtp', 'username')
    except NoOptionError:
        username = None

    try:
        password = config.get('smtp', 'password')
    except NoOptionError:
        password = None
    return (host, port, starttls, username, password)


def get_smtp(
    host: Optional[str] = None,
    port: Optional[int] = None,
    starttls: Optional[bool] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    timeout: float = 30,
) -> SMTP:
    """Connect to an SMTP host using the given parameters.

    >>> get_smtp(host='smtp.example.com', username='rincewind')
    Traceback (most recent call last):
      ...
    ValueError: sending passwords in the clear is unsafe! Use STARTTLS.
    """
    if host is None:
        host = 'localhost'
    if port is None:
        port = SMTP_PORT
    if username and not starttls:
        raise ValueError(
            'sending passwords in the clear is unsafe! Use STARTTLS.'
        )
    log.info('connect to SMTP server at %s:%d', host, port)
    smtp = SMTP(host=host, port=port, timeout=timeout)
    smtp.ehlo()
    if starttls:
        smtp.starttls()
        smtp.ehlo()
    if username and password:
        smtp.login(username, password)
    return smtp


def group_by_domain(recipients: Sequence[str]) -> Dict[str, List[str]]:
    """Group ``recipients`` by domain, keeping first-seen order.

    >>> dict(group_by_domain(['a@x.org', 'b@y.org', 'c@x.org']))
    {'x.org': ['a@x.org', 'c@x.org'], 'y.org': ['b@y.org']}
    """
    domains: Dict[str, List[str]] = OrderedDict()
    for recipient in recipients:
        domains.setdefault(get_domain(recipient), []).append(recipient)
    return domains


class Dispatcher:
    """Delivery transport interface."""

    def send(self, envelope: 'Envelope') -> Iterator[Result]:
        raise NotImplementedError()


class RelayDispatcher(Dispatcher):
    """Deliver everything through one smarthost."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        starttls: Optional[bool] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        self.params = (host, port, starttls, username, password)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.params[0]}:{self.params[1]}>"

    def send(self, envelope: 'Envelope') -> Iterator[Result]:
        fields = {'host': self.params[0] or 'localhost'}
        try:
            smtp = get_smtp(*self.params)
        except (OSError, ValueError, smtplib.SMTPException) as err:
            yield Result(Level.FATAL, 'cannot connect to relay', err, fields)
            return
        yield Result(Level.INFO, 'connected to relay', fields=fields)

        try:
            refused = smtp.sendmail(
                envelope.sender, envelope.recipients, envelope.as_bytes()
            )
        except smtplib.SMTPRecipientsRefused as err:
            yield Result(Level.FATAL, 'all recipients refused', err, fields)
            return
        except (OSError, smtplib.SMTPException) as err:
            yield Result(Level.FATAL, 'relay rejected message', err, fields)
            return
        finally:
            try:
                smtp.quit()
            except (OSError, smtplib.SMTPException) as err:
                log.debug('error while disconnecting: %s', err)

        for recipient, (code, reply) in refused.items():
            error = smtplib.SMTPResponseException(code, reply)
            yield Result(
                Level.WARN,
                f"recipient {recipient} refused",
                error,
                dict(fields, recipient=recipient),
            )
        yield Result(Level.INFO, 'send mail OK', fields=fields)


class DirectDispatcher(Dispatcher):
    """Deliver straight to each recipient domain's MX hosts.

    Domains are handled concurrently on worker threads.  Results are
    yielded in the order they arrive; closing the iterator early stops
    workers from trying further hosts.
    """

    def __init__(
        self,
        resolver: Optional[dns.resolver.Resolver] = None,
        port: int = SMTP_PORT,
        timeout: float = 30,
        local_hostname: Optional[str] = None,
        max_workers: int = 8,
    ) -> None:
        self.resolver = resolver
        self.port = port
        self.timeout = timeout
        self.local_hostname = local_hostname
        self.max_workers = max_workers

    def lookup_mx(self, domain: str) -> List[str]:
        """Return MX hosts for ``domain`` by preference.

        A domain without MX records is its own mail host.
        """
        if self.resolver is None:
            self.resolver = dns.resolver.Resolver()
        try:
            answer = self.resolver.resolve(domain, 'MX')
        except dns.resolver.NoAnswer:
            log.debug('no MX for %s, using the domain itself', domain)
            return [domain]
        records = sorted(answer, key=lambda record: record.preference)
        return [record.exchange.to_text().rstrip('.') for record in records]

    def _deliver(
        self, host: str, sender: str, recipients: List[str], data: bytes
    ) -> Dict[str, Tuple[int, bytes]]:
        log.info('connect to %s:%d', host, self.port)
        with SMTP(
            host=host,
            port=self.port,
            local_hostname=self.local_hostname,
            timeout=self.timeout,
        ) as smtp:
            smtp.ehlo()
            if smtp.has_extn('starttls'):
                context = ssl.create_default_context()
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
                smtp.starttls(context=context)
                smtp.ehlo()
            return smtp.sendmail(sender, recipients, data)

    def _deliver_domain(
        self,
        domain: str,
        sender: str,
        recipients: List[str],
        data: bytes,
        results: 'queue.Queue',
        cancel: threading.Event,
    ) -> None:
        fields = {'domain': domain, 'recipients': ','.join(recipients)}
        try:
            if not domain:
                results.put(Result(
                    Level.FATAL, 'recipient without domain', fields=fields
                ))
                return
            try:
                hosts = self.lookup_mx(domain)
            except dns.exception.DNSException as err:
                results.put(Result(
                    Level.FATAL, f"cannot resolve MX for {domain}", err, fields
                ))
                return

            error: Optional[BaseException] = None
            for host in hosts:
                if cancel.is_set():
                    return
                host_fields = dict(fields, mx=host)
                try:
                    refused = self._deliver(host, sender, recipients, data)
                except (OSError, smtplib.SMTPException) as err:
                    error = err
                    results.put(Result(
                        Level.WARN, f"delivery via {host} failed", err,
                        host_fields,
                    ))
                    continue
                for recipient, (code, reply) in refused.items():
                    results.put(Result(
                        Level.WARN,
                        f"recipient {recipient} refused",
                        smtplib.SMTPResponseException(code, reply),
                        dict(host_fields, recipient=recipient),
                    ))
                results.put(Result(
                    Level.INFO, 'send mail OK', fields=host_fields
                ))
                return
            results.put(Result(
                Level.FATAL, f"no more MX hosts for {domain}", error, fields
            ))
        finally:
            results.put(_DONE)

    def send(self, envelope: 'Envelope') -> Iterator[Result]:
        domains = group_by_domain(envelope.recipients)
        sender = envelope.sender
        data = envelope.as_bytes()
        results: 'queue.Queue' = queue.Queue()
        cancel = threading.Event()
        executor = ThreadPoolExecutor(
            max_workers=max(1, min(self.max_workers, len(domains)))
        )
        pending = 0
        try:
            for domain, recipients in domains.items():
                executor.submit(
                    self._deliver_domain, domain, sender, recipients, data,
                    results, cancel,
                )
                pending += 1
            while pending:
                item = results.get()
                if item is _DONE:
                    pending -= 1
                    continue
                yield item
        finally:
            cancel.set()
            executor.shutdown(wait=False)
