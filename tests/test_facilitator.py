"""Tests for facilitator-side refund settlement."""

import copy

import httpx
import pytest

from conftest import DEPOSIT_TX, ESCROW, FACTORY, MERCHANT, NETWORK, NONCE, PROXY, TOKEN
from fakes import rate_limit_error
from x402r_refund import (
    AuthorizationBindingMismatchError,
    ConfigurationError,
    DepositExecutionError,
    InvalidFactoryError,
    InvalidPaymentError,
    MerchantNotRegisteredError,
    NonceReusedError,
    PaymentPayload,
    PaymentRequirements,
    ProxyConsistencyError,
    RefundHelperConfig,
    RefundSettlementExecutor,
    RegistrationCheckError,
    RelayDeploymentError,
    SettlementTimeoutError,
    declare_refund_extension,
    extract_refund_info,
    settle_with_refund_helper,
)
from x402r_refund.classifier import DEPOSIT_FALLBACK_DIAGNOSTIC


def _writes(chain, function_name):
    return [call for call in chain.write_contract.await_args_list if call.args[2] == function_name]


class TestExtractRefundInfo:
    def test_from_payload_extensions(self, payment_payload):
        info = extract_refund_info(payment_payload)

        assert info.factory_address == FACTORY
        assert info.merchant_payouts == {PROXY.lower(): MERCHANT}

    def test_from_requirements_extensions(self, payment_payload, payment_requirements):
        extensions = payment_payload.pop("extensions")
        payment_requirements["extensions"] = extensions

        info = extract_refund_info(payment_payload, payment_requirements)

        assert info.factory_address == FACTORY

    def test_accepts_models(self, payment_payload):
        assert extract_refund_info(PaymentPayload.model_validate(payment_payload)) is not None

    def test_absent(self, payment_payload):
        payment_payload["extensions"] = {}
        assert extract_refund_info(payment_payload) is None

    def test_missing_factory(self, payment_payload):
        payment_payload["extensions"] = {"refund": {"info": {"merchantPayouts": {}}}}
        assert extract_refund_info(payment_payload) is None

    def test_malformed_factory(self, payment_payload):
        payment_payload["extensions"] = declare_refund_extension("0xnot-a-factory", {})
        assert extract_refund_info(payment_payload) is None


class TestSettle:
    @pytest.mark.asyncio
    async def test_not_a_refund_payment(self, executor, chain, payment_payload, payment_requirements):
        payment_payload["extensions"] = {}

        assert await executor.settle(payment_payload, payment_requirements) is None
        chain.write_contract.assert_not_awaited()
        assert chain.read_calls == []

    @pytest.mark.asyncio
    async def test_deploys_relay_and_deposits(self, executor, chain, payment_payload, payment_requirements, payer_account):
        result = await executor.settle(payment_payload, payment_requirements)

        assert result.success is True
        assert result.transaction == DEPOSIT_TX
        assert result.network == NETWORK
        assert result.payer == payer_account.address
        assert len(_writes(chain, "deployRelay")) == 1

        (deposit,) = _writes(chain, "executeDeposit")
        address, _abi, _name, args = deposit.args
        assert address == PROXY
        assert args[0] == payer_account.address
        assert args[1:4] == [10000, 0, 1999999999]
        assert args[4] == bytes.fromhex(NONCE[2:])
        assert args[5] in (27, 28)
        assert len(args[6]) == 32 and len(args[7]) == 32

    @pytest.mark.asyncio
    async def test_accepts_models(self, executor, payment_payload, payment_requirements):
        result = await executor.settle(
            PaymentPayload.model_validate(payment_payload),
            PaymentRequirements.model_validate(payment_requirements),
        )
        assert result.success is True

    @pytest.mark.asyncio
    async def test_existing_relay_is_not_redeployed(self, executor, chain, payment_payload, payment_requirements):
        await executor.settle(payment_payload, payment_requirements)

        result = await executor.settle(payment_payload, payment_requirements)

        assert result.success is True
        assert len(_writes(chain, "deployRelay")) == 1
        assert len(_writes(chain, "executeDeposit")) == 2

    @pytest.mark.asyncio
    async def test_factory_without_code(self, executor, chain, payment_payload, payment_requirements):
        del chain.code[FACTORY.lower()]

        with pytest.raises(InvalidFactoryError) as exc_info:
            await executor.settle(payment_payload, payment_requirements)

        assert exc_info.value.kind == "InvalidFactory"
        chain.write_contract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_factory_check_failure(self, executor, chain, payment_payload, payment_requirements):
        chain.fail_next("getCode", ConnectionError("connection refused"))

        with pytest.raises(InvalidFactoryError):
            await executor.settle(payment_payload, payment_requirements)

    @pytest.mark.asyncio
    async def test_proxy_not_in_metadata(self, executor, chain, payment_payload, payment_requirements):
        payment_payload["extensions"] = declare_refund_extension(FACTORY, {})

        assert await executor.settle(payment_payload, payment_requirements) is None
        chain.write_contract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unregistered_merchant(self, executor, chain, payment_payload, payment_requirements):
        chain.set_read(ESCROW, "registeredMerchants", lambda merchant: False)

        with pytest.raises(MerchantNotRegisteredError) as exc_info:
            await executor.settle(payment_payload, payment_requirements)

        assert "https://app.402r.org" in str(exc_info.value)
        assert exc_info.value.merchant.lower() == MERCHANT
        assert _writes(chain, "executeDeposit") == []

    @pytest.mark.asyncio
    async def test_custom_registration_url(self, chain, fake_sleep, payment_payload, payment_requirements):
        chain.set_read(ESCROW, "registeredMerchants", lambda merchant: False)
        config = RefundHelperConfig(registration_url="https://register.example.org")
        executor = RefundSettlementExecutor(chain, config, sleep=fake_sleep)

        with pytest.raises(MerchantNotRegisteredError, match="register.example.org"):
            await executor.settle(payment_payload, payment_requirements)

    @pytest.mark.asyncio
    async def test_registration_check_failure(self, executor, chain, payment_payload, payment_requirements):
        chain.set_read(ESCROW, "registeredMerchants", ValueError("execution reverted"))

        with pytest.raises(RegistrationCheckError):
            await executor.settle(payment_payload, payment_requirements)

    @pytest.mark.asyncio
    async def test_rate_limited_registration_check_recovers(
        self, executor, chain, sleeps, payment_payload, payment_requirements
    ):
        chain.fail_next("registeredMerchants", rate_limit_error(), rate_limit_error())

        result = await executor.settle(payment_payload, payment_requirements)

        assert result.success is True
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_missing_signature(self, executor, chain, payment_payload, payment_requirements):
        payment_payload["payload"].pop("signature")

        assert await executor.settle(payment_payload, payment_requirements) is None
        assert _writes(chain, "executeDeposit") == []

    @pytest.mark.asyncio
    async def test_authorization_for_other_recipient(self, executor, chain, payment_payload, payment_requirements):
        payment_payload["payload"]["authorization"]["to"] = MERCHANT

        with pytest.raises(AuthorizationBindingMismatchError):
            await executor.settle(payment_payload, payment_requirements)

        assert _writes(chain, "executeDeposit") == []

    @pytest.mark.asyncio
    async def test_token_mismatch(self, executor, chain, payment_payload, payment_requirements):
        payment_requirements["asset"] = "0x" + "cc" * 20

        with pytest.raises(ProxyConsistencyError, match="Token mismatch"):
            await executor.settle(payment_payload, payment_requirements)

        assert _writes(chain, "executeDeposit") == []

    @pytest.mark.asyncio
    async def test_escrow_mismatch(self, executor, chain, payment_payload, payment_requirements):
        reads = iter([ESCROW, "0x" + "ee" * 20])
        chain.deploy(PROXY)
        chain.set_read(PROXY, "MERCHANT_PAYOUT", MERCHANT)
        chain.set_read(PROXY, "TOKEN", TOKEN)
        chain.set_read(PROXY, "ESCROW", lambda: next(reads))

        with pytest.raises(ProxyConsistencyError, match="ESCROW mismatch"):
            await executor.settle(payment_payload, payment_requirements)

    @pytest.mark.asyncio
    async def test_unreadable_proxy_immutables(self, executor, chain, payment_payload, payment_requirements):
        chain.deploy(PROXY)
        chain.set_read(PROXY, "MERCHANT_PAYOUT", MERCHANT)
        chain.set_read(PROXY, "ESCROW", ESCROW)

        with pytest.raises(ProxyConsistencyError, match="proxy immutables"):
            await executor.settle(payment_payload, payment_requirements)

    @pytest.mark.asyncio
    async def test_smart_wallet_signature_is_not_handled(self, executor, chain, payment_payload, payment_requirements):
        payment_payload["payload"]["signature"] = "0x" + "01" * 200

        assert await executor.settle(payment_payload, payment_requirements) is None
        assert _writes(chain, "executeDeposit") == []

    @pytest.mark.asyncio
    async def test_used_nonce(self, executor, chain, payment_payload, payment_requirements):
        chain.set_read(TOKEN, "authorizationState", lambda authorizer, nonce: True)

        with pytest.raises(NonceReusedError):
            await executor.settle(payment_payload, payment_requirements)

        assert _writes(chain, "executeDeposit") == []

    @pytest.mark.asyncio
    async def test_nonce_check_failure_is_ignored(self, executor, chain, payment_payload, payment_requirements):
        chain.set_read(TOKEN, "authorizationState", ValueError("execution reverted"))

        result = await executor.settle(payment_payload, payment_requirements)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_deposit_retry_recovers(self, executor, chain, sleeps, payment_payload, payment_requirements):
        chain.fail_next("executeDeposit", ValueError("nonce too low"), ValueError("nonce too low"))

        result = await executor.settle(payment_payload, payment_requirements)

        assert result.transaction == DEPOSIT_TX
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_deposit_revert_reason(self, executor, chain, sleeps, payment_payload, payment_requirements):
        def revert(address, args):
            raise ValueError("execution reverted: FiatTokenV2: invalid signature")

        chain.write_handlers["executeDeposit"] = revert

        with pytest.raises(DepositExecutionError) as exc_info:
            await executor.settle(payment_payload, payment_requirements)

        assert exc_info.value.reason == "FiatTokenV2: invalid signature"
        assert "Contract reverted: FiatTokenV2: invalid signature" in str(exc_info.value)
        assert len(_writes(chain, "executeDeposit")) == 6
        assert sleeps == [1.0, 2.0, 3.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_deposit_failed_receipt(self, executor, chain, payment_payload, payment_requirements):
        chain.receipts[DEPOSIT_TX] = {"status": 0}

        with pytest.raises(DepositExecutionError) as exc_info:
            await executor.settle(payment_payload, payment_requirements)

        message = str(exc_info.value)
        assert message.startswith("Failed to execute proxy.executeDeposit: ")
        assert DEPOSIT_FALLBACK_DIAGNOSTIC in message
        assert DEPOSIT_TX in message
        assert exc_info.value.reason is None

    @pytest.mark.asyncio
    async def test_deadline(self, chain, fake_sleep, payment_payload, payment_requirements):
        chain.fail_next("registeredMerchants", *[rate_limit_error() for _ in range(3)])
        executor = RefundSettlementExecutor(chain, RefundHelperConfig(timeout_seconds=2.5), sleep=fake_sleep)

        with pytest.raises(SettlementTimeoutError):
            await executor.settle(payment_payload, payment_requirements)

        assert _writes(chain, "executeDeposit") == []

    @pytest.mark.asyncio
    async def test_rate_limited_relay_code_check_aborts_typed(
        self, executor, chain, sleeps, payment_payload, payment_requirements
    ):
        get_code = chain.get_code

        async def proxy_rate_limited(address):
            if address.lower() == PROXY.lower():
                raise rate_limit_error()
            return await get_code(address)

        chain.get_code = proxy_rate_limited

        with pytest.raises(RelayDeploymentError) as exc_info:
            await executor.settle(payment_payload, payment_requirements)

        assert exc_info.value.kind == "RelayDeploymentFailed"
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)
        assert sleeps == [1.0, 2.0, 4.0, 8.0, 16.0]
        chain.write_contract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_createx_discovery_failure_aborts_typed(self, executor, chain, payment_payload, payment_requirements):
        payment_requirements["network"] = "eip155:424242"
        chain.set_read(FACTORY, "getCreateX", ValueError("execution reverted"))

        with pytest.raises(ConfigurationError) as exc_info:
            await executor.settle(payment_payload, payment_requirements)

        assert exc_info.value.kind == "ConfigurationError"
        chain.write_contract.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [("value", "ten"), ("validAfter", "-1"), ("validBefore", "1.5"), ("nonce", "0x1234")],
    )
    async def test_malformed_authorization_fails_before_chain_calls(
        self, executor, chain, sleeps, payment_payload, payment_requirements, field, value
    ):
        payment_payload["payload"]["authorization"][field] = value

        with pytest.raises(InvalidPaymentError) as exc_info:
            await executor.settle(payment_payload, payment_requirements)

        assert exc_info.value.kind == "InvalidPayment"
        assert chain.read_calls == []
        assert sleeps == []
        chain.write_contract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_payload_without_extension_is_not_applicable(
        self, executor, chain, payment_payload, payment_requirements
    ):
        payment_payload["extensions"] = {}
        payment_payload["payload"]["authorization"]["value"] = "ten"

        assert await executor.settle(payment_payload, payment_requirements) is None
        assert chain.read_calls == []

    @pytest.mark.asyncio
    async def test_deposit_without_retries(self, chain, fake_sleep, sleeps, payment_payload, payment_requirements):
        chain.fail_next("executeDeposit", ValueError("nonce too low"))
        executor = RefundSettlementExecutor(chain, RefundHelperConfig(deposit_max_retries=0), sleep=fake_sleep)

        with pytest.raises(DepositExecutionError) as exc_info:
            await executor.settle(payment_payload, payment_requirements)

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert len(_writes(chain, "executeDeposit")) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_does_not_mutate_inputs(self, executor, payment_payload, payment_requirements):
        payload_before = copy.deepcopy(payment_payload)
        requirements_before = copy.deepcopy(payment_requirements)

        await executor.settle(payment_payload, payment_requirements)

        assert payment_payload == payload_before
        assert payment_requirements == requirements_before


@pytest.mark.asyncio
async def test_settle_with_refund_helper(chain, payment_payload, payment_requirements):
    result = await settle_with_refund_helper(payment_payload, payment_requirements, chain)

    assert result.success is True
    assert result.transaction == DEPOSIT_TX
