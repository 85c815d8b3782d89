"""Models package."""

from .user import User
from .api_credential import ApiCredential
from .payment import Payment
from .voucher import Voucher, VoucherRedemption
from .credit_transaction import CreditTransaction
from .extension_session import ExtensionSession
from .knowledge_file import KnowledgeFile
from .llm_request import ChatHistory, LLMRequest
from .system_config import SystemConfig
