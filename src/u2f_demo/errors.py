"""
Error taxonomy and device error translation.

Every ceremony ends in an Outcome: Success(payload) or Failure(category, detail).
Device error codes are the U2F client codes also used by python-fido2
(ClientError.ERR), translated here into user-facing failures.
"""

import abc
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from fido2.client import ClientError

ErrorCode = ClientError.ERR


class Category(Enum):
    """Closed set of failure categories a ceremony can end with."""

    DEVICE_ERROR = "device_error"
    BAD_REQUEST = "bad_request"
    CONFIGURATION_UNSUPPORTED = "configuration_unsupported"
    ALREADY_REGISTERED = "already_registered"
    NOT_REGISTERED = "not_registered"
    TIMEOUT = "timeout"
    UNKNOWN_ERROR = "unknown_error"
    TRANSPORT_ERROR = "transport_error"
    PROTOCOL_ERROR = "protocol_error"


@dataclass(frozen=True)
class Success:
    payload: Any

    ok = True


@dataclass(frozen=True)
class Failure:
    category: Category
    detail: Any = None
    message: str = ""

    ok = False


class U2fDemoError(Exception):
    """Base error type."""


class CeremonyError(U2fDemoError, metaclass=abc.ABCMeta):
    """An error that terminates the ceremony it occurs in."""

    @abc.abstractmethod
    def to_failure(self, enrolling):
        """Return the Failure this error ends a ceremony with."""


class DeviceError(CeremonyError):
    """The device answered with an error code."""

    def __init__(self, code):
        super().__init__(code)
        self.code = code

    def to_failure(self, enrolling):
        return translate_error(self.code, enrolling)


class TransportError(CeremonyError):
    """A relying-party call failed.

    ``phase`` is "begin" or "finish" inside a ceremony, None for the token
    management calls that run outside one.
    """

    BEGIN = "begin"
    FINISH = "finish"

    def __init__(self, phase, reason):
        super().__init__(phase, reason)
        self.phase = phase
        self.reason = reason

    def __str__(self):
        return str(self.reason)

    def to_failure(self, enrolling):
        if self.phase == self.BEGIN:
            action = "enroll" if enrolling else "authenticate"
            message = f"can't {action}: {self.reason}"
        else:
            message = str(self.reason)
        return Failure(Category.TRANSPORT_ERROR, self.phase, message)


class ProtocolError(CeremonyError):
    """A relying-party or device response did not have the expected shape."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason

    def __str__(self):
        return str(self.reason)

    def to_failure(self, enrolling):
        return Failure(Category.PROTOCOL_ERROR, self.reason, f"protocol error: {self.reason}")


class UnboundKeyError(ProtocolError):
    """The device answered for a key handle with no session bound to it."""

    def __init__(self, key_id):
        super().__init__(f"no session bound to key handle {key_id}")
        self.key_id = key_id


class StaleResponse(U2fDemoError):
    """A response arrived for a request that is no longer pending."""

    def __init__(self, request_id):
        super().__init__(request_id)
        self.request_id = request_id

    def __str__(self):
        return f"no pending request with id {self.request_id!r}"


_MESSAGES = {
    ErrorCode.OTHER_ERROR: (Category.DEVICE_ERROR, "sign error (other)"),
    ErrorCode.BAD_REQUEST: (Category.BAD_REQUEST, "bad request"),
    ErrorCode.CONFIGURATION_UNSUPPORTED: (
        Category.CONFIGURATION_UNSUPPORTED,
        "configuration unsupported",
    ),
    ErrorCode.TIMEOUT: (Category.TIMEOUT, "timeout"),
}


def parse_error_code(code) -> Optional[ErrorCode]:
    """Return the known error code for ``code`` (int or numeric string), or None."""
    try:
        return ErrorCode(int(code))
    except (TypeError, ValueError):
        return None


def is_device_error(code):
    """True when a response's ``errorCode`` reports a failure.

    Missing codes and OK (0, whether sent as int or string) are successes;
    anything else, recognised or not, is an error.
    """
    if code is None or code == "":
        return False
    try:
        return int(code) != 0
    except (TypeError, ValueError):
        return True


def translate_error(code, enrolling) -> Failure:
    """Map a device error code to a user-facing failure.

    Only DEVICE_INELIGIBLE depends on ``enrolling``: during enrollment it means
    the token is already registered, during authentication that it is not.
    Unrecognised codes keep the raw value as the failure detail.
    """
    known = parse_error_code(code)
    if known == ErrorCode.DEVICE_INELIGIBLE:
        if enrolling:
            return Failure(Category.ALREADY_REGISTERED, known, "U2F token is already registered")
        return Failure(Category.NOT_REGISTERED, known, "U2F token is not registered")
    if known in _MESSAGES:
        category, message = _MESSAGES[known]
        return Failure(category, known, message)
    return Failure(Category.UNKNOWN_ERROR, code, f"unknown error code={code}")
