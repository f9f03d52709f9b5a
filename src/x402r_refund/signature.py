"""
Transfer-authorization signature decoding.

``executeDeposit`` takes an ECDSA signature split into ``(v, r, s)``.
Signatures from counterfactual smart wallets arrive wrapped in an ERC-6492
envelope; the envelope is dropped and the inner signature is used.

Anything that is not a 65-byte ECDSA signature after unwrapping is not
handled by the refund helper: :func:`decode_signature` returns None and the
caller falls back to normal settlement.
"""

from dataclasses import dataclass
from typing import Optional, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes

# ERC-6492 magic suffix (32 bytes of 0x6492)
ERC6492_MAGIC_VALUE = bytes.fromhex("64926492" * 8)

ECDSA_SIGNATURE_LENGTH = 65


@dataclass(frozen=True)
class SignatureComponents:
    """ECDSA signature split for on-chain verification. ``v`` is 27 or 28."""

    v: int
    r: bytes
    s: bytes

    def to_bytes(self) -> bytes:
        return self.r + self.s + bytes([self.v])


@dataclass(frozen=True)
class Erc6492Signature:
    """Parsed ERC-6492 envelope."""

    factory: Optional[str]
    factory_calldata: bytes
    signature: bytes


def _to_bytes(signature: Union[str, bytes]) -> bytes:
    if isinstance(signature, str):
        return bytes(HexBytes(signature))
    return bytes(signature)


def has_erc6492_wrapper(signature: Union[str, bytes]) -> bool:
    """Check whether the signature ends with the ERC-6492 magic suffix."""
    raw = _to_bytes(signature)
    return len(raw) > len(ERC6492_MAGIC_VALUE) and raw.endswith(ERC6492_MAGIC_VALUE)


def parse_erc6492_signature(signature: Union[str, bytes]) -> Erc6492Signature:
    """
    Unwrap an ERC-6492 signature.

    The envelope is ``abi.encode(address factory, bytes calldata, bytes sig)``
    followed by the magic suffix. Signatures without the suffix are returned
    unchanged with no factory.

    Raises:
        ValueError: If the suffix is present but the envelope is malformed
    """
    raw = _to_bytes(signature)
    if not has_erc6492_wrapper(raw):
        return Erc6492Signature(factory=None, factory_calldata=b"", signature=raw)

    try:
        factory, calldata, inner = decode(
            ["address", "bytes", "bytes"], raw[: -len(ERC6492_MAGIC_VALUE)]
        )
    except (DecodingError, ValueError) as e:
        raise ValueError(f"Malformed ERC-6492 signature: {e}") from e
    return Erc6492Signature(factory=factory, factory_calldata=calldata, signature=inner)


def normalize_v(v: int) -> int:
    """Normalize a recovery id (0/1 or 27/28) to 27/28."""
    if v < 27:
        return v + 27
    return v


def decode_signature(signature: Union[str, bytes]) -> Optional[SignatureComponents]:
    """
    Decode a transfer-authorization signature into ``(v, r, s)``.

    Args:
        signature: Hex string or raw bytes, optionally ERC-6492 wrapped

    Returns:
        The signature components, or None if the unwrapped signature is not
        a 65-byte ECDSA signature (unsupported, not an error)
    """
    raw = _to_bytes(signature)
    try:
        raw = parse_erc6492_signature(raw).signature
    except ValueError:
        # Not a usable envelope: treat the original bytes as the signature
        pass

    if len(raw) != ECDSA_SIGNATURE_LENGTH:
        return None

    return SignatureComponents(
        v=normalize_v(raw[64]),
        r=raw[0:32],
        s=raw[32:64],
    )
