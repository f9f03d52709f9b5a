"""Shared pytest fixtures for x402r_refund tests."""

import pytest
from eth_account import Account

from fakes import FakeSigner
from x402r_refund import Deadline, RefundSettlementExecutor, compute_relay_address, declare_refund_extension
from x402r_refund.networks import BASE_SEPOLIA
from x402r_refund.retry import ChainReader

NETWORK = "eip155:84532"
CREATEX = BASE_SEPOLIA.createx_address
FACTORY = "0x41cc4d337fec5e91ddcf4c363700fc6dfbd0c1d2"
MERCHANT = "0x7a7e3d7a3f2b1c4e5d6f708192a3b4c5d6e7f809"
ESCROW = "0x5e5c0a1b2c3d4e5f60718293a4b5c6d7e8f90a1b"
TOKEN = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"
PROXY = compute_relay_address(CREATEX, FACTORY, MERCHANT)

DEPLOY_TX = "0x" + "d1" * 32
DEPOSIT_TX = "0x" + "e2" * 32
NONCE = "0x" + "ab" * 32

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}


@pytest.fixture
def payer_account():
    """Deterministic client account."""
    return Account.from_key("0x" + "1" * 64)


@pytest.fixture
def facilitator_account():
    """Deterministic facilitator account."""
    return Account.from_key("0x" + "2" * 64)


@pytest.fixture
def sleeps():
    """Delays requested through the recording sleep."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def deadline(fake_sleep):
    return Deadline(sleep=fake_sleep)


@pytest.fixture
def chain(facilitator_account):
    """
    A chain with the factory deployed and the merchant registered, where
    the merchant's relay proxy does not exist yet.
    """
    signer = FakeSigner(facilitator_account.address)
    signer.deploy(FACTORY)
    signer.deploy(ESCROW)
    signer.deploy(TOKEN)
    signer.set_read(FACTORY, "getRelayAddress", lambda merchant: compute_relay_address(CREATEX, FACTORY, merchant))
    signer.set_read(FACTORY, "getCreateX", CREATEX)
    signer.set_read(ESCROW, "registeredMerchants", lambda merchant: True)
    signer.set_read(TOKEN, "authorizationState", lambda authorizer, nonce: False)

    def deploy_relay(address, args):
        (merchant,) = args
        proxy = compute_relay_address(CREATEX, FACTORY, merchant)
        signer.deploy(proxy)
        signer.set_read(proxy, "MERCHANT_PAYOUT", merchant)
        signer.set_read(proxy, "TOKEN", TOKEN)
        signer.set_read(proxy, "ESCROW", ESCROW)
        return DEPLOY_TX

    signer.write_handlers["deployRelay"] = deploy_relay
    signer.write_handlers["executeDeposit"] = lambda address, args: DEPOSIT_TX
    return signer


@pytest.fixture
def reader(chain, deadline):
    return ChainReader(chain, deadline=deadline)


@pytest.fixture
def executor(chain, fake_sleep):
    return RefundSettlementExecutor(chain, sleep=fake_sleep)


@pytest.fixture
def authorization(payer_account):
    return {
        "from": payer_account.address,
        "to": PROXY,
        "value": "10000",
        "validAfter": "0",
        "validBefore": "1999999999",
        "nonce": NONCE,
    }


@pytest.fixture
def signature(payer_account, authorization):
    """EIP-712 TransferWithAuthorization signature over ``authorization``."""
    signed = Account.sign_typed_data(
        payer_account.key,
        domain_data={
            "name": "USDC",
            "version": "2",
            "chainId": 84532,
            "verifyingContract": TOKEN,
        },
        message_types=TRANSFER_WITH_AUTHORIZATION_TYPES,
        message_data={
            "from": authorization["from"],
            "to": authorization["to"],
            "value": int(authorization["value"]),
            "validAfter": int(authorization["validAfter"]),
            "validBefore": int(authorization["validBefore"]),
            "nonce": bytes.fromhex(NONCE[2:]),
        },
    )
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def payment_payload(authorization, signature):
    return {
        "x402Version": 2,
        "scheme": "exact",
        "network": NETWORK,
        "payload": {"authorization": authorization, "signature": signature},
        "extensions": declare_refund_extension(FACTORY, {PROXY.lower(): MERCHANT}),
    }


@pytest.fixture
def payment_requirements():
    return {
        "scheme": "exact",
        "network": NETWORK,
        "asset": TOKEN,
        "payTo": PROXY,
        "amount": "10000",
        "maxTimeoutSeconds": 300,
    }
