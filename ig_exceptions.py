#!/usr/bin/env python3
"""
Exceptions raised by the Instagram query engine.
"""

from typing import Optional


class InstaloaderException(Exception):
    """Base exception for this module. Not raised directly."""


class QueryReturnedBadRequestException(InstaloaderException):
    pass


class QueryReturnedForbiddenException(InstaloaderException):
    pass


class LoginRequiredException(InstaloaderException):
    pass


class LoginException(InstaloaderException):
    pass


class TwoFactorAuthRequiredException(LoginException):
    def __init__(self, message: str = "", two_factor_identifier: Optional[str] = None):
        super().__init__(message)
        self.two_factor_identifier = two_factor_identifier


class BadCredentialsException(LoginException):
    pass


class InvalidArgumentException(InstaloaderException):
    pass


class MismatchedCheckpointException(InvalidArgumentException):
    """Frozen iterator state does not belong to the iterator it is thawed into."""


class BadResponseException(InstaloaderException):
    pass


class ConnectionException(InstaloaderException):
    pass


class QueryReturnedNotFoundException(ConnectionException):
    pass


class TooManyRequestsException(ConnectionException):
    pass


class IPhoneSupportDisabledException(InstaloaderException):
    pass


class AbortDownloadException(Exception):
    """
    Aborts the whole crawl.

    Not a subclass of InstaloaderException, so the retry loop and
    error_catcher() never swallow it.
    """
