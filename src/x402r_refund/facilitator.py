"""
Facilitator-side refund settlement.

Settles ``exact`` EVM payments whose requirements carry the ``refund``
extension by routing them into escrow through a per-merchant relay proxy
(X402DepositRelayProxy), deploying the proxy on demand.

Flow (strictly sequential, first failure stops):

1. Extract the refund extension          -> None if absent
   and validate the payment              -> InvalidPaymentError
2. Check the factory has code            -> InvalidFactoryError
3. Resolve / deploy the relay            -> None if not a refund payment
4. Check the merchant is registered      -> MerchantNotRegisteredError
5. Check the authorization targets proxy -> AuthorizationBindingMismatchError
6. Check proxy TOKEN / ESCROW            -> ProxyConsistencyError
7. Decode the signature                  -> None if not ECDSA
8. Check the ERC-3009 nonce (advisory)   -> NonceReusedError
9. Call proxy.executeDeposit()           -> SettleResponse or DepositExecutionError

Returning None means "not handled here, use normal settlement". Raising
means the payment was committed to this path and settlement must abort.

Example:
    >>> from x402r_refund import settle_with_refund_helper
    >>>
    >>> result = await settle_with_refund_helper(payload, requirements, signer)
    >>> if result is None:
    ...     result = await normal_settle(payload, requirements)
"""

import asyncio
import logging
from typing import Any, Mapping, Optional, Union

from eth_utils import is_hex_address
from pydantic import ValidationError

from .address import addresses_equal, normalize_address
from .classifier import ErrorClassifier
from .config import RefundHelperConfig
from .contracts import AuthorizationTokenContract, RefundEscrowContract, RelayProxyContract
from .deployer import RelayDeployer
from .errors import (
    AuthorizationBindingMismatchError,
    DepositExecutionError,
    InvalidFactoryError,
    InvalidPaymentError,
    MerchantNotRegisteredError,
    NonceReusedError,
    ProxyConsistencyError,
    RefundSettlementError,
    RegistrationCheckError,
    SettlementTimeoutError,
)
from .retry import ChainReader, Deadline, SleepFunc
from .signature import SignatureComponents, decode_signature
from .signer import FacilitatorEvmSigner, receipt_succeeded
from .types import (
    REFUND_EXTENSION_KEY,
    ExactEvmAuthorization,
    PaymentPayload,
    PaymentRequirements,
    RefundExtension,
    RefundExtensionInfo,
    RelayResolution,
    SettleResponse,
)

logger = logging.getLogger(__name__)

PayloadLike = Union[PaymentPayload, Mapping[str, Any]]
RequirementsLike = Union[PaymentRequirements, Mapping[str, Any]]


def _as_payload(payment_payload: PayloadLike) -> PaymentPayload:
    if isinstance(payment_payload, PaymentPayload):
        return payment_payload
    return PaymentPayload.model_validate(payment_payload)


def _as_requirements(payment_requirements: RequirementsLike) -> PaymentRequirements:
    if isinstance(payment_requirements, PaymentRequirements):
        return payment_requirements
    return PaymentRequirements.model_validate(payment_requirements)


def _extensions_of(message: Union[PayloadLike, RequirementsLike]) -> Mapping[str, Any]:
    """Read ``extensions`` without validating the rest of the message."""
    if isinstance(message, PaymentPayload):
        extensions = message.extensions
    elif isinstance(message, PaymentRequirements):
        extensions = (message.model_extra or {}).get("extensions")
    else:
        extensions = message.get("extensions")
    return extensions if isinstance(extensions, Mapping) else {}


def extract_refund_info(
    payment_payload: PayloadLike,
    payment_requirements: Optional[RequirementsLike] = None,
) -> Optional[RefundExtensionInfo]:
    """
    Extract refund extension info from a payment.

    Extensions flow from the payment-required response into the payload, so
    the payload is checked first, then any ``extensions`` carried on the
    requirements.

    Returns:
        The extension info, or None if the extension is absent, has no
        factory address, or the factory address is malformed
    """
    raw = _extensions_of(payment_payload).get(REFUND_EXTENSION_KEY)
    if raw is None and payment_requirements is not None:
        raw = _extensions_of(payment_requirements).get(REFUND_EXTENSION_KEY)
    if not raw:
        return None

    try:
        extension = raw if isinstance(raw, RefundExtension) else RefundExtension.model_validate(raw)
    except ValidationError:
        logger.debug("Ignoring malformed refund extension: %r", raw)
        return None

    if not is_hex_address(extension.info.factory_address):
        return None
    return extension.info


class RefundSettlementExecutor:
    """
    Runs refund settlements against one facilitator signer.

    The executor holds no per-settlement state; one instance can serve
    concurrent settlements.

    Args:
        signer: Facilitator signer (see :class:`FacilitatorEvmSigner`)
        config: Retry, polling and deadline settings
        classifier: Classifier for deposit failures
        sleep: Coroutine function used for backoff delays
    """

    def __init__(
        self,
        signer: FacilitatorEvmSigner,
        config: Optional[RefundHelperConfig] = None,
        *,
        classifier: Optional[ErrorClassifier] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.signer = signer
        self.config = config or RefundHelperConfig()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep

    def new_deadline(self, timeout: Optional[float] = None) -> Deadline:
        if timeout is None:
            timeout = self.config.timeout_seconds
        return Deadline(timeout, sleep=self._sleep)

    async def settle(
        self,
        payment_payload: PayloadLike,
        payment_requirements: RequirementsLike,
        *,
        deadline: Optional[Deadline] = None,
    ) -> Optional[SettleResponse]:
        """
        Settle a payment through its relay proxy.

        Args:
            payment_payload: Payment payload (model or wire dict)
            payment_requirements: Payment requirements (model or wire dict)
            deadline: Overall deadline; defaults to ``config.timeout_seconds``

        Returns:
            SettleResponse on success, None if refund settlement does not apply

        Raises:
            RefundSettlementError: On any failure once the payment is
                committed to refund settlement
        """
        refund_info = extract_refund_info(payment_payload, payment_requirements)
        if refund_info is None:
            return None

        try:
            payload = _as_payload(payment_payload)
            requirements = _as_requirements(payment_requirements)
        except ValidationError as e:
            raise InvalidPaymentError(f"Invalid refund payment: {e}") from e

        deadline = deadline or self.new_deadline()
        reader = ChainReader(self.signer, policy=self.config.read_policy, deadline=deadline)

        await self._verify_factory(reader, refund_info.factory_address)

        deployer = RelayDeployer(
            reader,
            poll_attempts=self.config.deploy_poll_attempts,
            poll_step=self.config.deploy_poll_step,
        )
        relay = await deployer.resolve(
            refund_info.factory_address,
            requirements.pay_to,
            refund_info.merchant_payouts,
            network=requirements.network,
            createx_address=self.config.createx_address,
        )
        if relay is None:
            return None

        await self._verify_merchant_registered(reader, relay)

        authorization = payload.payload.authorization
        signature = payload.payload.signature
        if authorization is None or not signature:
            logger.debug("Payload has no authorization/signature, not a refund settlement")
            return None

        self._verify_authorization_binding(authorization, relay)
        await self._verify_proxy_consistency(reader, relay, requirements)

        components = decode_signature(signature)
        if components is None:
            logger.info("Non-ECDSA signature for %s, deferring to normal settlement", relay.proxy_address)
            return None

        await self._check_nonce_unused(reader, requirements.asset, authorization)

        tx_hash = await self._execute_deposit(reader, relay, authorization, components)
        logger.info(
            "Refund deposit settled via relay %s for %s: %s",
            relay.proxy_address,
            authorization.from_,
            tx_hash,
        )
        return SettleResponse(
            success=True,
            transaction=tx_hash,
            network=requirements.network,
            payer=authorization.from_,
        )

    async def _verify_factory(self, reader: ChainReader, factory_address: str) -> None:
        try:
            exists = await reader.has_code(normalize_address(factory_address, "factoryAddress"))
        except SettlementTimeoutError:
            raise
        except Exception as e:
            raise InvalidFactoryError(f"Failed to check factory contract: {e}") from e
        if not exists:
            raise InvalidFactoryError(
                f"Factory contract does not exist at {factory_address}. Invalid refund extension."
            )

    async def _verify_merchant_registered(self, reader: ChainReader, relay: RelayResolution) -> None:
        escrow = RefundEscrowContract(reader, relay.escrow_address)
        try:
            registered = await escrow.is_merchant_registered(relay.merchant_payout)
        except RefundSettlementError:
            raise
        except Exception as e:
            raise RegistrationCheckError(f"Failed to check merchant registration: {e}") from e

        if not registered:
            raise MerchantNotRegisteredError(
                f"Merchant {relay.merchant_payout} is not registered. Please register at "
                f"{self.config.registration_url} to enable refund functionality.",
                merchant=relay.merchant_payout,
            )

    def _verify_authorization_binding(
        self,
        authorization: ExactEvmAuthorization,
        relay: RelayResolution,
    ) -> None:
        auth_to = normalize_address(authorization.to, "authorization.to")
        if not addresses_equal(auth_to, relay.proxy_address):
            raise AuthorizationBindingMismatchError(
                f"Authorization 'to' address ({auth_to}) does not match proxy address "
                f"({relay.proxy_address}). The ERC3009 signature must be signed with "
                f"to=proxyAddress."
            )

    async def _verify_proxy_consistency(
        self,
        reader: ChainReader,
        relay: RelayResolution,
        requirements: PaymentRequirements,
    ) -> None:
        proxy = RelayProxyContract(reader, relay.proxy_address)
        asset = normalize_address(requirements.asset, "asset")
        try:
            proxy_token = await proxy.token()
            proxy_escrow = await proxy.escrow()
        except RefundSettlementError:
            raise
        except Exception as e:
            raise ProxyConsistencyError(
                f"Failed to read proxy immutables. This may indicate a proxy deployment "
                f"issue. Error: {e}"
            ) from e

        if not addresses_equal(proxy_token, asset):
            raise ProxyConsistencyError(
                f"Token mismatch: proxy {relay.proxy_address} has TOKEN {proxy_token} but "
                f"payment requires {asset}. transferWithAuthorization would fail. "
                f"Redeploy the proxy with the correct token: {asset}"
            )
        if not addresses_equal(proxy_escrow, relay.escrow_address):
            raise ProxyConsistencyError(
                f"Proxy ESCROW mismatch: proxy reports {proxy_escrow} but "
                f"{relay.escrow_address} was resolved earlier"
            )

    async def _check_nonce_unused(
        self,
        reader: ChainReader,
        asset: str,
        authorization: ExactEvmAuthorization,
    ) -> None:
        token = AuthorizationTokenContract(reader, asset)
        try:
            used = await token.authorization_state(authorization.from_, authorization.nonce)
        except SettlementTimeoutError:
            raise
        except Exception as e:
            # authorizationState is optional on some tokens
            logger.warning("Skipping ERC3009 nonce check on %s: %s", asset, e)
            return

        if used:
            raise NonceReusedError(
                f"ERC3009 nonce {authorization.nonce} has already been used. "
                f"This authorization cannot be reused."
            )

    async def _execute_deposit(
        self,
        reader: ChainReader,
        relay: RelayResolution,
        authorization: ExactEvmAuthorization,
        signature: SignatureComponents,
    ) -> str:
        proxy = RelayProxyContract(reader, relay.proxy_address)
        policy = self.config.deposit_policy
        attempt = 0

        while True:
            try:
                tx_hash = await proxy.execute_deposit(
                    authorization.from_,
                    int(authorization.value),
                    int(authorization.valid_after),
                    int(authorization.valid_before),
                    authorization.nonce,
                    signature,
                )
                receipt = await reader.deadline.run(
                    self.signer.wait_for_transaction_receipt(tx_hash),
                    "executeDeposit receipt",
                )
                if not receipt_succeeded(receipt):
                    raise RuntimeError(f"Proxy.executeDeposit transaction failed: {tx_hash}")
                return tx_hash
            except SettlementTimeoutError:
                raise
            except Exception as e:
                if attempt >= policy.max_retries:
                    classification = self.classifier.classify(e)
                    raise DepositExecutionError(
                        f"Failed to execute proxy.executeDeposit: {classification.message}",
                        reason=classification.reason,
                    ) from e
                delay = policy.delay_for(attempt)
                logger.warning(
                    "executeDeposit attempt %d/%d failed (%s), retrying in %.0fs",
                    attempt + 1,
                    policy.max_retries + 1,
                    e,
                    delay,
                )
            await reader.deadline.sleep(delay)
            attempt += 1


async def settle_with_refund_helper(
    payment_payload: PayloadLike,
    payment_requirements: RequirementsLike,
    signer: FacilitatorEvmSigner,
    *,
    config: Optional[RefundHelperConfig] = None,
    deadline: Optional[Deadline] = None,
) -> Optional[SettleResponse]:
    """
    Settle a refund payment via its relay proxy.

    High-level helper around :class:`RefundSettlementExecutor`. Returns None
    when refund settlement does not apply; raises
    :class:`~x402r_refund.errors.RefundSettlementError` on failure.
    """
    executor = RefundSettlementExecutor(signer, config)
    return await executor.settle(payment_payload, payment_requirements, deadline=deadline)
