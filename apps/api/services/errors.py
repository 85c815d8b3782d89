"""Error taxonomy shared by the gateway, ledger, pool and voucher services.

Every error carries a short ``user_message`` that is safe to show to the end
user. Routers translate these into HTTP responses; the gateway converts them
into failed ``GatewayResponse`` objects.
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for expected, user-facing failures."""

    default_message = "Request could not be completed."

    def __init__(self, user_message: Optional[str] = None):
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)


class ConfigurationError(GatewayError):
    """Session, credential, voucher or user is missing or inactive. Never retried."""

    default_message = "Configuration not found or inactive."


class EntitlementError(GatewayError):
    """User is not entitled to the requested tier or operation. Never retried."""

    default_message = "You are not allowed to make this request."


class CredentialValidationError(GatewayError):
    """A submitted key failed format, duplicate or live validation."""

    default_message = "API key is invalid or inactive."


class DuplicateCredentialError(CredentialValidationError):
    default_message = "API key already exists."


class LedgerConsistencyError(GatewayError):
    """A mutation would have driven a counter negative; nothing was written."""

    default_message = "Insufficient funds."


class InsufficientCreditsError(LedgerConsistencyError):
    default_message = "Insufficient credits. Please purchase credits to use premium models."


class InsufficientBalanceError(LedgerConsistencyError):
    default_message = "Insufficient balance."


class VoucherError(GatewayError):
    default_message = "Voucher cannot be used."


class VoucherNotRedeemableError(VoucherError):
    default_message = "This voucher does not provide any bonus and cannot be redeemed directly."


class DuplicateVoucherError(VoucherError):
    default_message = "Voucher code already exists."
