"""
Error taxonomy for narration requests.

Every failure on the speak path is mapped to one ErrorKind. The kind decides
two things: whether the failure counts toward the circuit breaker, and what
the caller sees in its SpeakResult (or the HTTP status in the API layer).

    Kind                 Counted   Disposition
    INVALID_INPUT        no        dropped
    INVALID_PARAMETER    no        dropped (service rejected the request)
    CLIENT_UNAVAILABLE   no        skipped, no network call
    CIRCUIT_OPEN         no        dropped, no network call
    TIMEOUT              yes       may trip the breaker
    CREDENTIALS          yes       client disabled until re-initialize
    NETWORK              yes
    RATE_LIMITED         yes
    SERVICE_UNAVAILABLE  yes
    STREAM_ERROR         no        resource never admitted
    PLAYBACK_FAILED      no        resource released as errored
    AUTOPLAY_BLOCKED     no        deferred until a user gesture
    UNKNOWN              yes       logged with diagnostic context

botocore exceptions are translated by classify_exception().
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    CredentialRetrievalError,
    HTTPClientError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from botocore.exceptions import ConnectionError as BotoConnectionError


class ErrorKind:
    """Classified failure kinds, used as SpeakResult.error and API error codes."""
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    CLIENT_UNAVAILABLE = "CLIENT_UNAVAILABLE"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    TIMEOUT = "TIMEOUT"
    CREDENTIALS = "CREDENTIALS"
    NETWORK = "NETWORK"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    STREAM_ERROR = "STREAM_ERROR"
    PLAYBACK_FAILED = "PLAYBACK_FAILED"
    AUTOPLAY_BLOCKED = "AUTOPLAY_BLOCKED"
    UNKNOWN = "UNKNOWN"


COUNTED_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.CREDENTIALS,
    ErrorKind.NETWORK,
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVICE_UNAVAILABLE,
    ErrorKind.UNKNOWN,
})


def is_counted(kind: str) -> bool:
    """Return True if a failure of this kind counts toward the circuit breaker."""
    return kind in COUNTED_KINDS


class NarrationError(Exception):
    """
    Base exception for narration failures.

    Attributes:
        message: Human-readable error message.
        kind: One of the ErrorKind constants.
        details: Optional dictionary with additional context.
    """
    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[str] = None, details: Optional[Dict] = None):
        self.message = message
        if kind is not None:
            self.kind = kind
        self.details = details or {}
        super().__init__(message)

    @property
    def counted(self) -> bool:
        return is_counted(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to standardized error response dict for API."""
        result = {
            "ok": False,
            "error": self.kind,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class InvalidInputError(NarrationError):
    kind = ErrorKind.INVALID_INPUT


class ClientUnavailableError(NarrationError):
    kind = ErrorKind.CLIENT_UNAVAILABLE


class CircuitOpenError(NarrationError):
    kind = ErrorKind.CIRCUIT_OPEN


class SynthesisTimeoutError(NarrationError):
    """Raised when the remote call does not answer within the deadline."""
    kind = ErrorKind.TIMEOUT


class StreamError(NarrationError):
    """Raised when the response body is empty or never terminates."""
    kind = ErrorKind.STREAM_ERROR


class PlaybackDeviceError(NarrationError):
    """Raised by a playback device for anything other than an autoplay rejection."""
    kind = ErrorKind.PLAYBACK_FAILED


class PlaybackBlockedError(PlaybackDeviceError):
    """Raised by a playback device when autoplay policy rejects play()."""
    kind = ErrorKind.AUTOPLAY_BLOCKED


_CREDENTIAL_CODES = frozenset({
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "SignatureDoesNotMatch",
    "InvalidClientTokenId",
    "ExpiredToken",
    "ExpiredTokenException",
    "MissingAuthenticationToken",
    "AccessDeniedException",
    "CredentialsError",
    "CredentialsProviderError",
})

_THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
})

_PARAMETER_CODES = frozenset({
    "InvalidParameterValue",
    "ValidationException",
    "InvalidSsmlException",
    "TextLengthExceededException",
    "InvalidSampleRateException",
    "LexiconNotFoundException",
    "EngineNotSupportedException",
    "LanguageNotSupportedException",
    "MarksNotSupportedForFormatException",
    "SsmlMarksNotSupportedForTextTypeException",
})

_SERVICE_CODES = frozenset({
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "ServiceFailureException",
    "InternalFailure",
    "InternalServerError",
})


def _classify_client_error(exc: ClientError) -> str:
    err = exc.response.get("Error", {}) or {}
    code = str(err.get("Code", ""))
    status = (exc.response.get("ResponseMetadata", {}) or {}).get("HTTPStatusCode")

    if code in _CREDENTIAL_CODES:
        return ErrorKind.CREDENTIALS
    if code in _THROTTLING_CODES or status == 429:
        return ErrorKind.RATE_LIMITED
    if code in _PARAMETER_CODES:
        return ErrorKind.INVALID_PARAMETER
    if code in _SERVICE_CODES or (isinstance(status, int) and status >= 500):
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN


def classify_exception(exc: BaseException) -> NarrationError:
    """
    Map any exception raised on the synthesis path to a NarrationError.

    NarrationErrors pass through unchanged. The original exception is kept
    as ``__cause__`` and its type name is recorded in ``details``.
    """
    if isinstance(exc, NarrationError):
        return exc

    details: Dict[str, Any] = {"exception": type(exc).__name__}

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ReadTimeoutError, ConnectTimeoutError)):
        kind = ErrorKind.TIMEOUT
    elif isinstance(exc, (NoCredentialsError, PartialCredentialsError, CredentialRetrievalError)):
        kind = ErrorKind.CREDENTIALS
    elif isinstance(exc, ParamValidationError):
        kind = ErrorKind.INVALID_PARAMETER
    elif isinstance(exc, (BotoConnectionError, HTTPClientError, ConnectionError)):
        kind = ErrorKind.NETWORK
    elif isinstance(exc, ClientError):
        kind = _classify_client_error(exc)
        details["code"] = exc.response.get("Error", {}).get("Code")
    else:
        kind = ErrorKind.UNKNOWN

    if kind == ErrorKind.TIMEOUT:
        err: NarrationError = SynthesisTimeoutError(str(exc) or "synthesis timed out", details=details)
    else:
        err = NarrationError(str(exc) or type(exc).__name__, kind=kind, details=details)
    err.__cause__ = exc
    return err
