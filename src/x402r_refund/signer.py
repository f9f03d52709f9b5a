"""
Facilitator signer capability.

The settlement flow only needs a handful of chain operations. Any object
implementing :class:`FacilitatorEvmSigner` can be used; tests pass mocks,
production hosts use :class:`Web3FacilitatorSigner`.
"""

import logging
from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

logger = logging.getLogger(__name__)

TX_STATUS_SUCCESS = 1


@runtime_checkable
class FacilitatorEvmSigner(Protocol):
    """Chain operations used by the refund settlement flow."""

    def get_addresses(self) -> list[str]:
        """Addresses the facilitator signs with (used in error messages)."""
        ...

    async def get_code(self, address: str) -> bytes:
        ...

    async def read_contract(
        self,
        address: str,
        abi: Sequence[Mapping[str, Any]],
        function_name: str,
        args: Sequence[Any],
    ) -> Any:
        ...

    async def write_contract(
        self,
        address: str,
        abi: Sequence[Mapping[str, Any]],
        function_name: str,
        args: Sequence[Any],
    ) -> str:
        """Submit a state-changing call and return the transaction hash."""
        ...

    async def wait_for_transaction_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        """Wait for a receipt; ``receipt["status"] == 1`` means success."""
        ...


def receipt_succeeded(receipt: Mapping[str, Any]) -> bool:
    status = receipt.get("status")
    return status == TX_STATUS_SUCCESS or status == "success"


class Web3FacilitatorSigner:
    """
    :class:`FacilitatorEvmSigner` backed by ``web3.AsyncWeb3`` and a local key.

    Example:
        >>> signer = Web3FacilitatorSigner(
        ...     private_key="0x...",
        ...     rpc_url="https://sepolia.base.org",
        ...     chain_id=84532,
        ... )
        >>> code = await signer.get_code("0xFactory...")
    """

    def __init__(
        self,
        private_key: str,
        *,
        rpc_url: str = "https://mainnet.base.org",
        chain_id: int = 8453,
        gas_limit: Optional[int] = None,
        receipt_timeout: float = 120.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        """
        Initialize the signer.

        Args:
            private_key: Hex-encoded private key of the facilitator account
            rpc_url: JSON-RPC endpoint for the target chain
            chain_id: EVM chain ID (e.g. 8453 for Base, 84532 for Base Sepolia)
            gas_limit: Fixed gas limit; estimated per transaction when None
            receipt_timeout: Seconds to wait for a transaction receipt
            w3: Pre-built AsyncWeb3 instance (overrides ``rpc_url``)
        """
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))

    def get_addresses(self) -> list[str]:
        return [self.account.address]

    def _contract(self, address: str, abi: Sequence[Mapping[str, Any]]):
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=list(abi),
        )

    async def get_code(self, address: str) -> bytes:
        code = await self.w3.eth.get_code(Web3.to_checksum_address(address))
        return bytes(code)

    async def read_contract(
        self,
        address: str,
        abi: Sequence[Mapping[str, Any]],
        function_name: str,
        args: Sequence[Any],
    ) -> Any:
        contract = self._contract(address, abi)
        func = getattr(contract.functions, function_name)
        return await func(*args).call()

    async def write_contract(
        self,
        address: str,
        abi: Sequence[Mapping[str, Any]],
        function_name: str,
        args: Sequence[Any],
    ) -> str:
        contract = self._contract(address, abi)
        func = getattr(contract.functions, function_name)(*args)

        tx_params: dict[str, Any] = {
            "from": self.account.address,
            "chainId": self.chain_id,
            "nonce": await self.w3.eth.get_transaction_count(self.account.address, "pending"),
        }
        if self.gas_limit is not None:
            tx_params["gas"] = self.gas_limit

        tx = await func.build_transaction(tx_params)
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.debug("Submitted %s to %s: %s", function_name, address, Web3.to_hex(tx_hash))
        return Web3.to_hex(tx_hash)

    async def wait_for_transaction_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        receipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.receipt_timeout
        )
        return dict(receipt)
