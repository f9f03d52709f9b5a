"""
On-demand relay proxy deployment.

A relay proxy lives at a deterministic CREATE3 address, so merchants can
advertise it (and clients can sign authorizations for it) before it exists.
The first settlement to a relay deploys it through the factory.

Deployed proxies are the source of truth for their own payout and escrow;
the extension's ``merchantPayouts`` map is only consulted for proxies that
do not exist yet.
"""

import logging
from typing import Mapping, Optional

from .address import addresses_equal, compute_relay_address, normalize_address
from .classifier import is_insufficient_funds_error
from .contracts import RelayFactoryContract, RelayProxyContract
from .errors import (
    AddressMismatchError,
    ConfigurationError,
    DeploymentNotObservedError,
    DeploymentRevertedError,
    InsufficientFundsError,
    RefundSettlementError,
    RelayDeploymentError,
    SettlementTimeoutError,
)
from .networks import get_createx_address
from .retry import ChainReader
from .signer import receipt_succeeded
from .types import ZERO_ADDRESS, RelayProxyState, RelayResolution

logger = logging.getLogger(__name__)


def lookup_merchant_payout(merchant_payouts: Mapping[str, str], proxy_address: str) -> Optional[str]:
    """
    Find the merchant payout for a proxy in the extension metadata.

    Tries the exact key first, then a case-normalized match. Returns None
    when the proxy is not listed or maps to the zero address.
    """
    merchant = merchant_payouts.get(proxy_address) or merchant_payouts.get(proxy_address.lower())
    if merchant is None:
        for key, value in merchant_payouts.items():
            if addresses_equal(key, proxy_address):
                merchant = value
                break
    if not merchant or addresses_equal(merchant, ZERO_ADDRESS):
        return None
    return normalize_address(merchant, "merchant_payout")


class RelayDeployer:
    """
    Resolves relay proxies and deploys them when needed.

    Args:
        reader: Retrying chain reader bound to the facilitator signer
        poll_attempts: Code probes after a confirmed deployment
        poll_step: Linear delay step between probes (1s, 2s, 3s, ...)
    """

    def __init__(self, reader: ChainReader, *, poll_attempts: int = 5, poll_step: float = 1.0):
        self.reader = reader
        self.poll_attempts = poll_attempts
        self.poll_step = poll_step

    async def read_state(self, proxy_address: str) -> RelayProxyState:
        """Read payout and escrow from a deployed proxy."""
        proxy = RelayProxyContract(self.reader, proxy_address)
        return RelayProxyState(
            deployed=True,
            merchant_payout=await proxy.merchant_payout(),
            escrow=await proxy.escrow(),
        )

    async def discover_deployer(
        self,
        factory_address: str,
        network: Optional[str] = None,
        createx_address: Optional[str] = None,
    ) -> str:
        """
        Resolve the CreateX deployer used by the factory.

        Order: explicit address, ``factory.getCreateX()``, then the standard
        deployment for ``network`` when the factory cannot answer.

        Raises:
            ConfigurationError: The factory cannot answer and the network
                has no known CreateX deployment
        """
        if createx_address:
            return normalize_address(createx_address, "createx_address")

        factory = RelayFactoryContract(self.reader, factory_address)
        try:
            return await factory.get_createx()
        except SettlementTimeoutError:
            raise
        except Exception as e:
            standard = get_createx_address(network) if network else None
            if standard is None:
                raise ConfigurationError(
                    f"Failed to discover the CreateX address of factory {factory_address} "
                    f"and network {network!r} has no known CreateX deployment. "
                    f"Set createx_address explicitly. Error: {e}"
                ) from e
            logger.warning(
                "factory.getCreateX() failed on %s (%s), using standard CreateX %s",
                factory_address,
                e,
                standard,
            )
            return standard

    async def resolve(
        self,
        factory_address: str,
        proxy_address: str,
        merchant_payouts: Mapping[str, str],
        *,
        network: Optional[str] = None,
        createx_address: Optional[str] = None,
    ) -> Optional[RelayResolution]:
        """
        Resolve the relay a payment targets, deploying it if necessary.

        Args:
            factory_address: Relay factory from the refund extension
            proxy_address: The payment's ``payTo`` (relay proxy address)
            merchant_payouts: Extension map of proxy -> merchant payout
            network: Payment network, used for CreateX discovery
            createx_address: Explicit CreateX address

        Returns:
            The resolved relay, or None if this payment is not a refund
            payment (unknown proxy, zero payout, or not a relay proxy)
        """
        proxy_address = normalize_address(proxy_address, "payTo")

        if await self._has_code(proxy_address):
            try:
                state = await self.read_state(proxy_address)
            except RefundSettlementError:
                raise
            except Exception as e:
                # Code exists but it does not behave like a relay proxy
                logger.info("Contract at %s is not a relay proxy: %s", proxy_address, e)
                return None
            if addresses_equal(state.merchant_payout, ZERO_ADDRESS):
                return None
            return RelayResolution(
                proxy_address=proxy_address,
                escrow_address=state.escrow,
                merchant_payout=state.merchant_payout,
            )

        merchant_payout = lookup_merchant_payout(merchant_payouts, proxy_address)
        if merchant_payout is None:
            logger.debug("No merchant payout for undeployed proxy %s", proxy_address)
            return None

        deployer_address = await self.discover_deployer(factory_address, network, createx_address)
        return await self.ensure_deployed(
            factory_address,
            deployer_address,
            merchant_payout,
            expected_proxy=proxy_address,
            known_undeployed=True,
        )

    async def ensure_deployed(
        self,
        factory_address: str,
        deployer_address: str,
        merchant_payout: str,
        *,
        expected_proxy: Optional[str] = None,
        known_undeployed: bool = False,
    ) -> RelayResolution:
        """
        Make sure the merchant's relay exists and return its escrow.

        Args:
            factory_address: Relay factory contract
            deployer_address: CreateX contract used by the factory
            merchant_payout: Merchant payout address
            expected_proxy: Address the caller believes the relay has
            known_undeployed: Skip the initial code probe

        Raises:
            AddressMismatchError: Local, caller and factory addresses disagree
            DeploymentRevertedError: Deployment reverted and no relay appeared
            DeploymentNotObservedError: No code at the address after polling
            InsufficientFundsError: Facilitator cannot pay for gas
            RelayDeploymentError: Any other deployment failure
        """
        factory_address = normalize_address(factory_address, "factory_address")
        merchant_payout = normalize_address(merchant_payout, "merchant_payout")
        computed = compute_relay_address(deployer_address, factory_address, merchant_payout)

        if expected_proxy is not None and not addresses_equal(computed, expected_proxy):
            raise AddressMismatchError(
                f"Address mismatch: computed relay address {computed} for merchant "
                f"{merchant_payout} but the payment targets {expected_proxy}. "
                f"This may indicate a factory or CreateX address mismatch."
            )

        proxy = RelayProxyContract(self.reader, computed)
        if not known_undeployed and await self._has_code(computed):
            return RelayResolution(
                proxy_address=computed,
                escrow_address=await proxy.escrow(),
                merchant_payout=merchant_payout,
            )

        factory = RelayFactoryContract(self.reader, factory_address)
        try:
            tx_hash = await self._deploy(factory, computed, merchant_payout)
            escrow = await proxy.escrow()
        except RefundSettlementError:
            raise
        except Exception as e:
            raise self._deployment_failure(e) from e

        return RelayResolution(
            proxy_address=computed,
            escrow_address=escrow,
            merchant_payout=merchant_payout,
            deployed_now=tx_hash is not None,
            deployment_tx=tx_hash,
        )

    async def _has_code(self, address: str) -> bool:
        try:
            return await self.reader.has_code(address)
        except SettlementTimeoutError:
            raise
        except Exception as e:
            raise RelayDeploymentError(f"Failed to check relay proxy at {address}: {e}") from e

    async def _deploy(
        self,
        factory: RelayFactoryContract,
        computed: str,
        merchant_payout: str,
    ) -> Optional[str]:
        """
        Deploy the relay. Returns the transaction hash, or None if another
        settlement deployed it first.
        """
        factory_computed = await factory.get_relay_address(merchant_payout)
        if not addresses_equal(factory_computed, computed):
            raise AddressMismatchError(
                f"Address mismatch: factory computed {factory_computed} but expected "
                f"{computed}. This may indicate a version or CreateX address mismatch."
            )

        try:
            tx_hash = await factory.deploy_relay(merchant_payout)
        except Exception:
            if await self.reader.has_code(computed):
                logger.info("Relay %s was deployed concurrently, continuing", computed)
                return None
            raise

        logger.info("Deploying relay %s for merchant %s: %s", computed, merchant_payout, tx_hash)
        receipt = await self.reader.deadline.run(
            self.reader.signer.wait_for_transaction_receipt(tx_hash),
            "deployRelay receipt",
        )
        if not receipt_succeeded(receipt):
            if await self.reader.has_code(computed):
                logger.info("Deployment %s reverted but relay %s exists, continuing", tx_hash, computed)
                return None
            raise DeploymentRevertedError(
                f"Relay deployment transaction failed: {tx_hash}. Transaction reverted.",
                tx_hash=tx_hash,
            )

        # CREATE3 code can show up a little after the receipt on some networks
        for attempt in range(self.poll_attempts):
            if attempt > 0:
                await self.reader.deadline.sleep(self.poll_step * attempt)
            if await self.reader.has_code(computed):
                logger.info("Relay %s deployed in %s", computed, tx_hash)
                return tx_hash

        try:
            factory_now = await factory.get_relay_address(merchant_payout)
        except Exception as e:
            factory_now = f"<unavailable: {e}>"
        raise DeploymentNotObservedError(
            f"Relay deployment completed but contract code not found at {computed}. "
            f"Transaction hash: {tx_hash}. Factory computed address: {factory_now}. "
            f"Expected address: {computed}. "
            f"This may indicate a CREATE3 deployment issue, timing problem, or address "
            f"computation mismatch.",
            tx_hash=tx_hash,
        )

    def _deployment_failure(self, error: Exception) -> RelayDeploymentError:
        if is_insufficient_funds_error(error):
            addresses = self.reader.signer.get_addresses()
            account = addresses[0] if addresses else "unknown"
            return InsufficientFundsError(
                f"Failed to deploy relay: Insufficient funds in facilitator account.\n"
                f"The facilitator account ({account}) does not have enough ETH to pay "
                f"for gas to deploy the relay contract.\n"
                f"Please fund the facilitator account with ETH to cover gas costs.\n"
                f"Original error: {error}",
                account=account,
            )
        return RelayDeploymentError(f"Failed to deploy relay: {error}")
