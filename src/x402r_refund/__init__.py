"""
x402r refund helper.

Routes x402 payments into escrow through per-merchant relay proxies that
are deployed on demand at deterministic CREATE3 addresses.

Merchants (server side):
    >>> from x402r_refund import refundable, with_refund
    >>> routes = with_refund({"/api": {"accepts": refundable(option)}}, FACTORY)

Facilitators:
    >>> from x402r_refund import settle_with_refund_helper
    >>> result = await settle_with_refund_helper(payload, requirements, signer)
    >>> # None -> proceed with normal settlement, exception -> abort
"""

from .address import compute_relay_address
from .cache import SettlementResultCache
from .classifier import ErrorClassifier, decode_revert_reason, is_rate_limit_error
from .config import RefundHelperConfig
from .deployer import RelayDeployer
from .errors import (
    AddressMismatchError,
    AuthorizationBindingMismatchError,
    ConfigurationError,
    DeploymentNotObservedError,
    DeploymentRevertedError,
    DepositExecutionError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidFactoryError,
    InvalidPaymentError,
    MerchantNotRegisteredError,
    NonceReusedError,
    ProxyConsistencyError,
    RefundSettlementError,
    RegistrationCheckError,
    RelayDeploymentError,
    SettlementTimeoutError,
)
from .facilitator import RefundSettlementExecutor, extract_refund_info, settle_with_refund_helper
from .retry import ChainReader, Deadline, RetryPolicy, read_with_retry
from .server import declare_refund_extension, is_refundable_option, refundable, with_refund
from .signature import SignatureComponents, decode_signature
from .signer import FacilitatorEvmSigner, Web3FacilitatorSigner
from .types import (
    REFUND_EXTENSION_KEY,
    REFUND_MARKER_KEY,
    PaymentPayload,
    PaymentRequirements,
    RefundExtension,
    RefundExtensionInfo,
    SettleResponse,
)

__version__ = "0.1.0"

__all__ = [
    # Address computation
    "compute_relay_address",
    # Settlement
    "RefundSettlementExecutor",
    "settle_with_refund_helper",
    "extract_refund_info",
    "RelayDeployer",
    "ChainReader",
    "Deadline",
    "RetryPolicy",
    "read_with_retry",
    "ErrorClassifier",
    "decode_revert_reason",
    "is_rate_limit_error",
    "SignatureComponents",
    "decode_signature",
    "FacilitatorEvmSigner",
    "Web3FacilitatorSigner",
    "SettlementResultCache",
    "RefundHelperConfig",
    # Merchant helpers
    "declare_refund_extension",
    "is_refundable_option",
    "refundable",
    "with_refund",
    # Types
    "REFUND_EXTENSION_KEY",
    "REFUND_MARKER_KEY",
    "PaymentPayload",
    "PaymentRequirements",
    "RefundExtension",
    "RefundExtensionInfo",
    "SettleResponse",
    # Errors
    "RefundSettlementError",
    "InvalidAddressError",
    "ConfigurationError",
    "InvalidFactoryError",
    "InvalidPaymentError",
    "AddressMismatchError",
    "RelayDeploymentError",
    "DeploymentRevertedError",
    "DeploymentNotObservedError",
    "InsufficientFundsError",
    "MerchantNotRegisteredError",
    "RegistrationCheckError",
    "AuthorizationBindingMismatchError",
    "ProxyConsistencyError",
    "NonceReusedError",
    "DepositExecutionError",
    "SettlementTimeoutError",
]
