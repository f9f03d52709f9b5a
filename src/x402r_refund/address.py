"""
Deterministic relay address computation (CREATE3 via CreateX).

Matches ``DepositRelayFactory.getRelayAddress()`` bit for bit:

1. ``salt = keccak256(abi.encodePacked(factoryAddress, merchantPayout))``
2. ``guardedSalt = keccak256(abi.encode(salt))`` (CreateX salt guard)
3. ``CREATEX.computeCreate3Address(guardedSalt)``

CREATE3 needs no contract bytecode: the address depends only on the
deployer (CreateX) and the salt, so it can be computed before deployment
without any on-chain call.
"""

from eth_abi import encode
from eth_utils import is_hex_address
from web3 import Web3

from .errors import InvalidAddressError

# Init code of the minimal proxy CreateX deploys with CREATE2 before the
# CREATE of the real contract.
CREATE3_PROXY_INITCODE = bytes.fromhex("67363d3d37363d34f03d5260086018f3")
CREATE3_PROXY_INITCODE_HASH = Web3.keccak(CREATE3_PROXY_INITCODE)


def normalize_address(address: str, field_name: str = "address") -> str:
    """
    Validate an address and return it in checksummed form.

    Any casing is accepted; a mixed-case input is not required to carry a
    valid EIP-55 checksum.

    Raises:
        InvalidAddressError: If the value is not a valid 20-byte hex address
    """
    if not isinstance(address, str) or not is_hex_address(address):
        raise InvalidAddressError(f"{field_name} is not a valid EVM address: {address!r}")
    return Web3.to_checksum_address(address)


def addresses_equal(a: str, b: str) -> bool:
    """Case-insensitive address comparison."""
    return a.lower() == b.lower()


def compute_create2_address(deployer_address: str, salt: bytes, init_code_hash: bytes) -> str:
    """Address of a CREATE2 deployment (EIP-1014)."""
    deployer = bytes.fromhex(normalize_address(deployer_address, "deployer_address")[2:])
    if len(salt) != 32:
        raise ValueError(f"CREATE2 salt must be 32 bytes, got {len(salt)}")
    return Web3.to_checksum_address(Web3.keccak(b"\xff" + deployer + salt + init_code_hash)[12:])


def compute_create_address(sender_address: str, nonce: int) -> str:
    """Address of a CREATE deployment for nonces below 0x80."""
    if not 0 <= nonce < 0x80:
        raise ValueError(f"nonce out of range for single-byte RLP: {nonce}")
    sender = bytes.fromhex(normalize_address(sender_address, "sender_address")[2:])
    # RLP([sender, nonce]); nonce 0 encodes as the empty string
    encoded_nonce = b"\x80" if nonce == 0 else bytes([nonce])
    return Web3.to_checksum_address(Web3.keccak(b"\xd6\x94" + sender + encoded_nonce)[12:])


def compute_create3_address(deployer_address: str, salt: bytes) -> str:
    """
    Compute a CREATE3 address from deployer and salt.

    The deployer CREATE2s a minimal proxy, which then CREATEs the contract
    as its first deployment (nonce 1).

    Args:
        deployer_address: Contract performing the CREATE3 deployment
        salt: 32-byte salt as seen by the deployer

    Returns:
        Checksummed address of the contract the deployer would create
    """
    proxy = compute_create2_address(deployer_address, salt, CREATE3_PROXY_INITCODE_HASH)
    return compute_create_address(proxy, 1)


def compute_relay_salt(factory_address: str, merchant_payout: str) -> bytes:
    """Return the guarded salt CreateX uses for a merchant's relay."""
    factory = normalize_address(factory_address, "factory_address")
    merchant = normalize_address(merchant_payout, "merchant_payout")

    salt = Web3.solidity_keccak(["address", "address"], [factory, merchant])
    return Web3.keccak(encode(["bytes32"], [bytes(salt)]))


def compute_relay_address(
    deployer_address: str,
    factory_address: str,
    merchant_payout: str,
) -> str:
    """
    Compute the deterministic relay proxy address for a merchant.

    Pure and local: no network access. Input casing does not matter, all
    addresses are checksum-normalized before hashing.

    Args:
        deployer_address: The CreateX contract address used by the factory
        factory_address: The DepositRelayFactory contract address
        merchant_payout: The merchant's payout address

    Returns:
        Checksummed relay proxy address

    Raises:
        InvalidAddressError: If any input is not a valid address

    Example:
        >>> compute_relay_address(
        ...     "0xba5Ed099633D3B313e4D5F7bdc1305d3c28ba5Ed",
        ...     "0xFactory...",
        ...     "0xMerchant...",
        ... )
    """
    deployer = normalize_address(deployer_address, "deployer_address")
    guarded_salt = compute_relay_salt(factory_address, merchant_payout)
    return compute_create3_address(deployer, bytes(guarded_salt))
