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

"""Sender-domain allow-list."""

import logging
from typing import Collection

from .email import get_domain
from .errors import AuthorizationError

log = logging.getLogger(__name__)


def authorize(sender: str, allowed_domains: Collection[str]) -> None:
    """Raise :class:`AuthorizationError` unless ``sender`` may send.

    An empty allow-list allows every domain.  Matching is exact and
    case-sensitive.

    >>> authorize('alice@other.com', [])
    >>> authorize('alice@example.com', ['example.com'])
    >>> authorize('alice@other.com', ['example.com'])
    Traceback (most recent call last):
      ...
    pgp_sendmail.errors.AuthorizationError: unauthorized sender domain other.com
    >>> authorize('alice@Example.com', ['example.com'])
    Traceback (most recent call last):
      ...
    pgp_sendmail.errors.AuthorizationError: unauthorized sender domain Example.com
    """
    if not allowed_domains:
        return
    domain = get_domain(sender)
    if domain not in allowed_domains:
        log.error('attempt to send with unauthorized domain %s', domain)
        raise AuthorizationError(sender, domain)
