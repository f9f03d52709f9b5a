"""
Error taxonomy for refund settlements.

Every fatal condition raised by the settlement flow is a
:class:`RefundSettlementError`. The ``kind`` attribute is a stable,
machine-readable label; the message is meant for operators.

"Not applicable" is never an error: the settlement helpers return ``None``
in that case so the caller proceeds with the normal settlement path.
"""

from typing import Optional


class RefundSettlementError(Exception):
    """Base class for fatal refund settlement failures."""

    kind = "RefundSettlementError"

    def __init__(self, message: str, *, kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def __str__(self) -> str:
        return self.message


# Configuration errors


class InvalidAddressError(RefundSettlementError, ValueError):
    """An address argument is not a well-formed 20-byte hex address."""

    kind = "InvalidAddress"


class ConfigurationError(RefundSettlementError, ValueError):
    """Helper configuration is missing or invalid."""

    kind = "ConfigurationError"


class InvalidFactoryError(RefundSettlementError):
    """The factory named by the refund extension has no code."""

    kind = "InvalidFactory"


class InvalidPaymentError(RefundSettlementError, ValueError):
    """A refund payment payload or its requirements failed validation."""

    kind = "InvalidPayment"


class AddressMismatchError(RefundSettlementError):
    """Caller and on-chain factory disagree on the relay address."""

    kind = "AddressMismatch"


# Deployment errors


class RelayDeploymentError(RefundSettlementError):
    """Relay deployment failed for an unclassified reason."""

    kind = "RelayDeploymentFailed"


class DeploymentRevertedError(RelayDeploymentError):
    kind = "DeploymentReverted"

    def __init__(self, message: str, *, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class DeploymentNotObservedError(RelayDeploymentError):
    kind = "DeploymentNotObserved"

    def __init__(self, message: str, *, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class InsufficientFundsError(RelayDeploymentError):
    """The facilitator account cannot pay for deployment gas."""

    kind = "InsufficientFunds"

    def __init__(self, message: str, *, account: Optional[str] = None):
        super().__init__(message)
        self.account = account


# Registration errors


class MerchantNotRegisteredError(RefundSettlementError):
    kind = "MerchantNotRegistered"

    def __init__(self, message: str, *, merchant: Optional[str] = None):
        super().__init__(message)
        self.merchant = merchant


class RegistrationCheckError(RefundSettlementError):
    kind = "RegistrationCheckFailed"


# Binding / consistency errors


class AuthorizationBindingMismatchError(RefundSettlementError):
    """The signed authorization does not target the relay proxy."""

    kind = "AuthorizationBindingMismatch"


class ProxyConsistencyError(RefundSettlementError):
    """Proxy immutables disagree with the payment or with earlier reads."""

    kind = "ProxyConsistencyError"


class NonceReusedError(RefundSettlementError):
    kind = "NonceReused"


# Execution errors


class DepositExecutionError(RefundSettlementError):
    """``executeDeposit`` failed after all retries."""

    kind = "DepositReverted"

    def __init__(self, message: str, *, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class SettlementTimeoutError(RefundSettlementError):
    """The caller-supplied settlement deadline expired."""

    kind = "SettlementTimeout"
