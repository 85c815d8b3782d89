"""Translation of service errors into HTTP responses."""

from fastapi import HTTPException

from services.errors import (
    ConfigurationError,
    DuplicateCredentialError,
    DuplicateVoucherError,
    EntitlementError,
    GatewayError,
    LedgerConsistencyError,
)


def to_http_exception(exc: GatewayError) -> HTTPException:
    if isinstance(exc, (DuplicateCredentialError, DuplicateVoucherError)):
        status_code = 409
    elif isinstance(exc, ConfigurationError):
        status_code = 404
    elif isinstance(exc, (EntitlementError, LedgerConsistencyError)):
        status_code = 402
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=exc.user_message)
