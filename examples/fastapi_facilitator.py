"""
FastAPI facilitator example with refund settlement.

Payments carrying the ``refund`` extension are settled into escrow through
the merchant's relay proxy. Everything else falls through to the
facilitator's normal settlement path (stubbed here).

Run with:
    pip install x402r-refund-helper[fastapi]
    export FACILITATOR_PRIVATE_KEY=0x...
    export RPC_URL=https://sepolia.base.org
    uvicorn examples.fastapi_facilitator:app --reload

Test:
    curl -X POST http://localhost:8000/settle \
        -H "Content-Type: application/json" \
        -d '{"paymentPayload": {...}, "paymentRequirements": {...}}'
"""

import logging
import os
from typing import Any, Optional

from fastapi import FastAPI
from pydantic import BaseModel, Field

from x402r_refund import (
    PaymentPayload,
    PaymentRequirements,
    RefundHelperConfig,
    RefundSettlementError,
    RefundSettlementExecutor,
    SettlementResultCache,
    SettleResponse,
    Web3FacilitatorSigner,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("facilitator")

app = FastAPI(title="x402r Refund Facilitator Example")

signer = Web3FacilitatorSigner(
    private_key=os.environ["FACILITATOR_PRIVATE_KEY"],
    rpc_url=os.environ.get("RPC_URL", "https://sepolia.base.org"),
    chain_id=int(os.environ.get("CHAIN_ID", "84532")),
)
executor = RefundSettlementExecutor(signer, RefundHelperConfig.from_env())
results = SettlementResultCache()


class SettleRequest(BaseModel):
    payment_payload: PaymentPayload = Field(..., alias="paymentPayload")
    payment_requirements: PaymentRequirements = Field(..., alias="paymentRequirements")

    class Config:
        populate_by_name = True


async def normal_settle(payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
    """Placeholder for the facilitator's regular exact-scheme settlement."""
    return SettleResponse(success=False, network=requirements.network, error_reason="not_implemented")


def _nonce_of(payload: PaymentPayload) -> Optional[str]:
    authorization = payload.payload.authorization
    return authorization.nonce if authorization else None


@app.post("/settle")
async def settle(request: SettleRequest) -> dict[str, Any]:
    payload = request.payment_payload
    requirements = request.payment_requirements

    nonce = _nonce_of(payload)
    if nonce:
        cached = results.get(nonce)
        if cached is not None:
            return cached.model_dump(by_alias=True, exclude_none=True)

    try:
        result = await executor.settle(payload, requirements)
    except RefundSettlementError as e:
        logger.error("Refund settlement failed (%s): %s", e.kind, e)
        result = SettleResponse(
            success=False,
            network=requirements.network,
            error_reason=e.kind,
        )
        if nonce:
            results.put(nonce, result)
        return {**result.model_dump(by_alias=True, exclude_none=True), "errorMessage": e.message}

    if result is None:
        result = await normal_settle(payload, requirements)
    if nonce and result.success:
        results.put(nonce, result)
    return result.model_dump(by_alias=True, exclude_none=True)


@app.get("/")
async def index():
    """Facilitator identity."""
    return {"facilitator": signer.get_addresses()[0]}


if __name__ == "__main__":
    import uvicorn
    print("Starting x402r refund facilitator example...")
    print("  POST http://localhost:8000/settle")
    uvicorn.run(app, host="0.0.0.0", port=8000)
