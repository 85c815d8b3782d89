"""Closed value sets stored as plain strings on the models."""

import enum


class RequestMode(str, enum.Enum):
    FREE_USER_KEY = "free_user_key"
    FREE_POOL = "free_pool"
    PREMIUM = "premium"


class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    RATE_LIMITED = "rate_limited"
    DEAD = "dead"


class CredentialFailure(str, enum.Enum):
    """Outcome of a failed upstream call, as seen by the credential pool."""

    INVALID_KEY = "invalid_key"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_ERROR = "model_error"
    TRANSIENT = "transient"


class AnswerMode(str, enum.Enum):
    SINGLE = "single"
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class VoucherType(str, enum.Enum):
    CREDIT = "credit"
    BALANCE = "balance"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class LedgerEntryType(str, enum.Enum):
    CREDIT_USED = "credit_used"
    CREDIT_PURCHASE = "credit_purchase"
    CREDIT_BONUS = "credit_bonus"
    BALANCE_TOPUP = "balance_topup"
    VOUCHER_REDEEM = "voucher_redeem"
    REFUND = "refund"
    EXCHANGE_DEBIT = "exchange_debit"
    EXCHANGE_CREDIT = "exchange_credit"
    WELCOME_BONUS = "welcome_bonus"
    ADMIN_CREDIT_ADD = "admin_credit_add"
    ADMIN_CREDIT_DEDUCT = "admin_credit_deduct"
    ADMIN_BALANCE_ADD = "admin_balance_add"
    ADMIN_BALANCE_DEDUCT = "admin_balance_deduct"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RequestStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
