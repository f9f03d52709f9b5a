"""
Typed adapters for the contracts the refund flow talks to.

Each adapter exposes the contract's methods as plain async Python methods.
Reads go through :class:`~x402r_refund.retry.ChainReader` (rate-limit
retries, deadline); writes go through the reader's signer wrapped in the
reader's deadline.

Contract mapping:
    RelayFactory.getRelayAddress(merchant)   -> consistency check before deploy
    RelayFactory.deployRelay(merchant)       -> on-demand deployment
    RelayFactory.getCreateX()                -> deployer discovery
    RelayProxy.executeDeposit(...)           -> the settlement call
    RelayProxy.MERCHANT_PAYOUT/TOKEN/ESCROW  -> immutable state
    Escrow.registeredMerchants(merchant)     -> registration gate
    Token.authorizationState(owner, nonce)   -> ERC-3009 nonce check
"""

from typing import Any

from hexbytes import HexBytes
from web3 import Web3

from .retry import ChainReader
from .signature import SignatureComponents


def _function(name: str, inputs: list[tuple[str, str]], outputs: list[str], mutability: str) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
    }


FACTORY_ABI = [
    _function("getRelayAddress", [("merchantPayout", "address")], ["address"], "view"),
    _function("deployRelay", [("merchantPayout", "address")], ["address"], "nonpayable"),
    _function("getCreateX", [], ["address"], "view"),
]

RELAY_PROXY_ABI = [
    _function(
        "executeDeposit",
        [
            ("fromUser", "address"),
            ("amount", "uint256"),
            ("validAfter", "uint256"),
            ("validBefore", "uint256"),
            ("nonce", "bytes32"),
            ("v", "uint8"),
            ("r", "bytes32"),
            ("s", "bytes32"),
        ],
        [],
        "nonpayable",
    ),
    _function("MERCHANT_PAYOUT", [], ["address"], "view"),
    _function("TOKEN", [], ["address"], "view"),
    _function("ESCROW", [], ["address"], "view"),
]

ESCROW_ABI = [
    _function("registeredMerchants", [("merchantPayout", "address")], ["bool"], "view"),
]

AUTHORIZATION_STATE_ABI = [
    _function("authorizationState", [("authorizer", "address"), ("nonce", "bytes32")], ["bool"], "view"),
]


class _ContractAdapter:
    abi: list[dict[str, Any]] = []

    def __init__(self, reader: ChainReader, address: str):
        self.reader = reader
        self.address = Web3.to_checksum_address(address)

    async def _read(self, function_name: str, *args: Any) -> Any:
        return await self.reader.read_contract(self.address, self.abi, function_name, args)

    async def _write(self, function_name: str, *args: Any) -> str:
        return await self.reader.deadline.run(
            self.reader.signer.write_contract(self.address, self.abi, function_name, list(args)),
            function_name,
        )

    async def _read_address(self, function_name: str, *args: Any) -> str:
        return Web3.to_checksum_address(await self._read(function_name, *args))


class RelayFactoryContract(_ContractAdapter):
    abi = FACTORY_ABI

    async def get_relay_address(self, merchant_payout: str) -> str:
        return await self._read_address("getRelayAddress", Web3.to_checksum_address(merchant_payout))

    async def deploy_relay(self, merchant_payout: str) -> str:
        """Submit ``deployRelay`` and return the transaction hash."""
        return await self._write("deployRelay", Web3.to_checksum_address(merchant_payout))

    async def get_createx(self) -> str:
        return await self._read_address("getCreateX")


class RelayProxyContract(_ContractAdapter):
    abi = RELAY_PROXY_ABI

    async def merchant_payout(self) -> str:
        return await self._read_address("MERCHANT_PAYOUT")

    async def token(self) -> str:
        return await self._read_address("TOKEN")

    async def escrow(self) -> str:
        return await self._read_address("ESCROW")

    async def execute_deposit(
        self,
        from_user: str,
        amount: int,
        valid_after: int,
        valid_before: int,
        nonce: str,
        signature: SignatureComponents,
    ) -> str:
        """Submit ``executeDeposit`` and return the transaction hash."""
        return await self._write(
            "executeDeposit",
            Web3.to_checksum_address(from_user),
            amount,
            valid_after,
            valid_before,
            bytes(HexBytes(nonce)),
            signature.v,
            signature.r,
            signature.s,
        )


class RefundEscrowContract(_ContractAdapter):
    abi = ESCROW_ABI

    async def is_merchant_registered(self, merchant_payout: str) -> bool:
        return bool(await self._read("registeredMerchants", Web3.to_checksum_address(merchant_payout)))


class AuthorizationTokenContract(_ContractAdapter):
    abi = AUTHORIZATION_STATE_ABI

    async def authorization_state(self, authorizer: str, nonce: str) -> bool:
        """True if the ERC-3009 nonce has already been used by ``authorizer``."""
        return bool(
            await self._read(
                "authorizationState",
                Web3.to_checksum_address(authorizer),
                bytes(HexBytes(nonce)),
            )
        )
