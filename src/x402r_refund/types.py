"""
Data model for the x402 refund helper extension.

Payment payloads and requirements arrive as x402 wire JSON (camelCase).
The models accept either the wire names or the snake_case attribute names
and keep unknown fields, so they can be validated from a raw request body
and dumped back without loss.
"""

import re
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

# Extension identifier inside ``extensions`` of requirements and payloads
REFUND_EXTENSION_KEY = "refund"

# Marker set in a payment option's ``extra`` by ``refundable()``
REFUND_MARKER_KEY = "_x402_refund"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ADDRESS_PATTERN = "^0x[a-fA-F0-9]{40}$"

REFUND_EXTENSION_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "factoryAddress": {
            "type": "string",
            "pattern": ADDRESS_PATTERN,
            "description": "The X402DepositRelayFactory contract address",
        },
        "merchantPayouts": {
            "type": "object",
            "additionalProperties": {
                "type": "string",
                "pattern": ADDRESS_PATTERN,
            },
            "description": "Map of proxy address to merchant payout address",
        },
    },
    "required": ["factoryAddress", "merchantPayouts"],
    "additionalProperties": False,
}


class ExactEvmAuthorization(BaseModel):
    """
    ERC-3009 TransferWithAuthorization parameters.

    Amounts and timestamps stay decimal strings on the wire but must parse as
    uint256; the nonce must be 32 bytes of hex.
    """

    from_: str = Field(..., alias="from")
    to: str
    value: str
    valid_after: str = Field(..., alias="validAfter")
    valid_before: str = Field(..., alias="validBefore")
    nonce: str

    class Config:
        populate_by_name = True

    @field_validator("value", "valid_after", "valid_before", mode="before")
    @classmethod
    def _uint256_string(cls, value: Any) -> str:
        if isinstance(value, bool):
            raise ValueError("must be an unsigned integer")
        if isinstance(value, int):
            value = str(value)
        if not isinstance(value, str) or not value.isascii() or not value.isdigit():
            raise ValueError(f"must be an unsigned decimal integer, got {value!r}")
        if int(value) >= 2**256:
            raise ValueError("must fit in uint256")
        return value

    @field_validator("nonce")
    @classmethod
    def _bytes32_hex(cls, value: str) -> str:
        if not re.fullmatch(r"0x[0-9a-fA-F]{64}", value):
            raise ValueError(f"must be 0x-prefixed 32-byte hex, got {value!r}")
        return value


class ExactEvmPayload(BaseModel):
    """Scheme payload of an ``exact`` EVM payment."""

    authorization: Optional[ExactEvmAuthorization] = None
    signature: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "allow"


class PaymentPayload(BaseModel):
    """Payment payload submitted by the client."""

    x402_version: int = Field(2, alias="x402Version")
    scheme: Optional[str] = None
    network: Optional[str] = None
    payload: ExactEvmPayload = Field(default_factory=ExactEvmPayload)
    extensions: dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        extra = "allow"


class PaymentRequirements(BaseModel):
    """Payment requirements the payload is settled against."""

    scheme: str = "exact"
    network: str
    asset: str
    pay_to: str = Field(..., alias="payTo")
    amount: Optional[str] = None
    max_amount_required: Optional[str] = Field(None, alias="maxAmountRequired")
    max_timeout_seconds: Optional[int] = Field(None, alias="maxTimeoutSeconds")
    extra: dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        extra = "allow"


class RefundExtensionInfo(BaseModel):
    """
    Refund extension metadata.

    ``merchant_payouts`` maps relay proxy address to merchant payout address.
    It may name proxies that are not deployed yet and is the only source of
    truth for the owner of such a proxy.
    """

    factory_address: str = Field(..., alias="factoryAddress")
    merchant_payouts: dict[str, str] = Field(default_factory=dict, alias="merchantPayouts")

    class Config:
        populate_by_name = True


class RefundExtension(BaseModel):
    """Refund extension entry (info plus JSON schema)."""

    info: RefundExtensionInfo
    schema_: dict[str, Any] = Field(
        default_factory=lambda: dict(REFUND_EXTENSION_SCHEMA), alias="schema"
    )

    class Config:
        populate_by_name = True


class RelayProxyState(BaseModel):
    """
    State of a relay proxy.

    Once deployed, the payout, token and escrow are immutable on-chain and
    are always read from the proxy instead of trusted from metadata.
    """

    deployed: bool
    merchant_payout: str
    token: Optional[str] = None
    escrow: Optional[str] = None


class RelayResolution(BaseModel):
    """Result of resolving (and, if needed, deploying) a relay proxy."""

    proxy_address: str
    escrow_address: str
    merchant_payout: str
    deployed_now: bool = False
    deployment_tx: Optional[str] = None


class SettleResponse(BaseModel):
    """Settlement result returned to the facilitator host."""

    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = Field(None, alias="errorReason")

    class Config:
        populate_by_name = True
        frozen = True
