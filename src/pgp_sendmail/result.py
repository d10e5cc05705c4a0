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

"""Graded delivery results and the policy for draining them.

A dispatcher yields one :class:`Result` per delivery step.  Levels are
ordered ``FATAL < WARN < INFO``: anything more severe than ``WARN``
aborts the message.
"""

import logging
from enum import IntEnum
from typing import Any, Dict, Iterable, Optional

from .errors import DeliveryError

log = logging.getLogger(__name__)


class Level(IntEnum):
    """Severity of a :class:`Result`.

    >>> Level.FATAL < Level.WARN < Level.INFO
    True
    """

    FATAL = 0
    WARN = 1
    INFO = 2


class Result:
    """Outcome of one delivery attempt or step."""

    def __init__(
        self,
        level: Level,
        message: str = '',
        error: Optional[BaseException] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.level = level
        self.message = message
        self.error = error
        if fields is None:
            fields = {}
        self.fields = fields

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.level.name} {self}>"

    def __str__(self) -> str:
        if self.error is not None and not self.message:
            return str(self.error)
        return self.message


def format_fields(fields: Dict[str, Any]) -> str:
    """Render structured fields for a log line.

    >>> format_fields({'domain': 'example.com', 'mx': 'mx1.example.com'})
    'domain=example.com mx=mx1.example.com'
    >>> format_fields({})
    ''
    """
    return ' '.join(f"{key}={value}" for key, value in fields.items())


class ResultReporter:
    """Log each result by severity and abort on the first fatal one.

    >>> reporter = ResultReporter()
    >>> reporter.drain([Result(Level.INFO, 'sent'), Result(Level.WARN, 'slow')])
    <Level.WARN: 1>
    >>> reporter.drain([
    ...     Result(Level.INFO, 'sent'),
    ...     Result(Level.FATAL, 'no more MX'),
    ...     Result(Level.INFO, 'never seen'),
    ... ])
    Traceback (most recent call last):
      ...
    pgp_sendmail.errors.DeliveryError: no more MX
    """

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    def _line(self, result: Result) -> str:
        if self.verbose and result.fields:
            return f"{result} ({format_fields(result.fields)})"
        return str(result)

    def report(self, result: Result) -> None:
        """Log ``result``, raising :class:`DeliveryError` if it is fatal."""
        if result.level > Level.WARN:
            log.info('%s', self._line(result))
        elif result.level == Level.WARN:
            log.warning('%s', self._line(result))
        else:
            log.error('%s', self._line(result))
            raise DeliveryError(result) from result.error

    def drain(self, results: Iterable[Result]) -> Level:
        """Consume ``results`` and return the most severe level seen.

        An empty sequence counts as ``INFO``.  Iteration stops at the
        first fatal result; if ``results`` is a generator it is closed so
        the producer can stop early.
        """
        worst = Level.INFO
        try:
            for result in results:
                worst = min(worst, result.level)
                self.report(result)
        finally:
            close = getattr(results, 'close', None)
            if close is not None:
                close()
        return worst
