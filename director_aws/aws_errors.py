"""Classification of botocore errors into provider errors.

AWS reports failures as ``ClientError`` with a machine readable code, or as
``BotoCoreError`` subclasses for transport and credential problems. The
functions here turn both into the InvalidCredentials / Transient /
Unrecoverable taxonomy.
"""

from __future__ import annotations

from typing import Final, NoReturn

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from director_aws.exceptions import (
    InvalidCredentialsError,
    ProviderError,
    TransientProviderError,
    UnrecoverableProviderError,
)

AUTHORIZATION_ERROR_CODES: Final = frozenset({"AuthFailure", "UnauthorizedOperation"})

UNRECOVERABLE_ERROR_CODES: Final = frozenset({
    "OperationNotPermitted",
    "Unsupported",
    "InvalidParameterValue",
})

THROTTLING_ERROR_CODES: Final = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestThrottled",
    "RequestThrottledException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "SlowDown",
    "PriorRequestNotComplete",
    "EC2ThrottledException",
})

SERVER_ERROR_CODES: Final = frozenset({
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
})

INSTANCE_NOT_FOUND: Final = "InvalidInstanceID.NotFound"
INSTANCE_ID_MALFORMED: Final = "InvalidInstanceID.Malformed"

_TRANSPORT_ERRORS: Final = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


def error_code(error: BaseException) -> str | None:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def error_message(error: BaseException) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Message") or str(error)
    return str(error)


def http_status(error: ClientError) -> int:
    return error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)


def has_code(error: BaseException, *codes: str) -> bool:
    return error_code(error) in codes


def is_not_found(error: BaseException) -> bool:
    """True for any ``*.NotFound`` style error code."""
    code = error_code(error)
    return code is not None and (code.endswith(".NotFound") or code.endswith("NotFoundException"))


def is_retryable(error: BaseException) -> bool:
    match error:
        case TransientProviderError():
            return True
        case ClientError():
            code = error_code(error) or ""
            return code in THROTTLING_ERROR_CODES or code in SERVER_ERROR_CODES or http_status(error) >= 500
        case _ if isinstance(error, _TRANSPORT_ERRORS):
            return True
        case _:
            return False


def classify(error: BaseException) -> ProviderError:
    """Wrap ``error`` in the provider error class describing how to handle it."""
    match error:
        case ProviderError():
            return error
        case NoCredentialsError() | PartialCredentialsError():
            return InvalidCredentialsError(str(error))
        case ClientError():
            code = error_code(error)
            message = error_message(error)
            if code in AUTHORIZATION_ERROR_CODES:
                return InvalidCredentialsError(f"{code}: {message}")
            if is_retryable(error):
                return TransientProviderError(f"{code}: {message}")
            return UnrecoverableProviderError(f"{code}: {message}")
        case BotoCoreError():
            if is_retryable(error):
                return TransientProviderError(str(error))
            return UnrecoverableProviderError(str(error))
        case _:
            return UnrecoverableProviderError(f"{type(error).__name__}: {error}")


def is_unrecoverable(error: BaseException) -> bool:
    """True unless retrying the call could succeed."""
    if not isinstance(error, Exception):
        return True
    return not isinstance(classify(error), TransientProviderError)


def propagate_if_unrecoverable(error: BaseException) -> None:
    classified = classify(error)
    if not isinstance(classified, TransientProviderError):
        if classified is error:
            raise error
        raise classified from error


def propagate(error: BaseException) -> NoReturn:
    """Raise ``error`` as a provider error, transient when nothing else fits."""
    propagate_if_unrecoverable(error)
    if isinstance(error, TransientProviderError):
        raise error
    raise TransientProviderError(error_message(error)) from error
