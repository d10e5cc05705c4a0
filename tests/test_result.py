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

import logging

import pytest

from pgp_sendmail.errors import DeliveryError
from pgp_sendmail.result import Level, Result, ResultReporter


def results(log):
    yield Result(Level.INFO, 'connected', fields={'mx': 'mx1'})
    log.append('after info')
    yield Result(Level.FATAL, 'no more MX hosts', OSError('refused'))
    log.append('after fatal')
    yield Result(Level.INFO, 'unreachable')


def test_fatal_stops_draining_and_closes_generator():
    log = []
    stream = results(log)
    with pytest.raises(DeliveryError) as excinfo:
        ResultReporter().drain(stream)
    assert log == ['after info']
    assert str(excinfo.value) == 'no more MX hosts: refused'
    assert excinfo.value.result.level == Level.FATAL
    # closed generators are exhausted
    assert list(stream) == []


def test_empty_sequence_is_info():
    assert ResultReporter().drain(iter([])) == Level.INFO


def test_worst_level_wins():
    reporter = ResultReporter()
    assert reporter.drain([
        Result(Level.INFO, 'a'), Result(Level.WARN, 'b'),
        Result(Level.INFO, 'c'),
    ]) == Level.WARN


def test_levels_are_logged_by_severity(caplog):
    caplog.set_level(logging.DEBUG, logger='pgp_sendmail')
    reporter = ResultReporter()
    reporter.report(Result(Level.INFO, 'fine'))
    reporter.report(Result(Level.WARN, 'hmm'))
    with pytest.raises(DeliveryError):
        reporter.report(Result(Level.FATAL, 'bad'))
    assert [(r.levelname, r.getMessage()) for r in caplog.records] == [
        ('INFO', 'fine'), ('WARNING', 'hmm'), ('ERROR', 'bad'),
    ]


def test_fields_only_when_verbose(caplog):
    caplog.set_level(logging.DEBUG, logger='pgp_sendmail')
    result = Result(Level.INFO, 'send mail OK', fields={'mx': 'mx1'})
    ResultReporter(verbose=False).report(result)
    ResultReporter(verbose=True).report(result)
    assert [r.getMessage() for r in caplog.records] == [
        'send mail OK', 'send mail OK (mx=mx1)',
    ]


def test_result_str_falls_back_to_error():
    assert str(Result(Level.WARN, error=OSError('timeout'))) == 'timeout'
