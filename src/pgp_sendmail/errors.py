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

"""Exceptions raised while processing a message.

Structural problems (:class:`InputError`, :class:`AuthorizationError`)
are raised before any key lookup or network traffic.
:class:`CryptoError` and :class:`DeliveryError` abort the message they
belong to and nothing else.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .result import Result


class SendmailError(Exception):
    """Base class for every error raised by ``pgp_sendmail``."""


class InputError(SendmailError, ValueError):
    """The message cannot be sent as given (no body, no recipients)."""


class AuthorizationError(SendmailError):
    """The sender domain is not in the configured allow-list.

    >>> err = AuthorizationError('mallory@evil.org', 'evil.org')
    >>> str(err)
    'unauthorized sender domain evil.org'
    """

    def __init__(self, sender: str, domain: str) -> None:
        super().__init__(f"unauthorized sender domain {domain}")
        self.sender = sender
        self.domain = domain


class CryptoError(SendmailError):
    """An encrypt or sign operation failed."""


class DeliveryError(SendmailError):
    """A fatal-graded delivery result aborted the message."""

    def __init__(self, result: 'Result') -> None:
        message = result.message
        if result.error is not None:
            message = f"{message}: {result.error}" if message else str(
                result.error
            )
        super().__init__(message)
        self.result = result

    @property
    def error(self) -> Optional[BaseException]:
        return self.result.error
