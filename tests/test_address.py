"""Tests for deterministic relay address computation."""

import pytest
from eth_abi import encode
from eth_abi.packed import encode_packed
from eth_utils import keccak, to_checksum_address

from conftest import CREATEX, FACTORY, MERCHANT
from x402r_refund import InvalidAddressError, compute_relay_address
from x402r_refund.address import (
    CREATE3_PROXY_INITCODE,
    CREATE3_PROXY_INITCODE_HASH,
    addresses_equal,
    compute_create2_address,
    compute_create3_address,
    compute_create_address,
    compute_relay_salt,
    normalize_address,
)
from x402r_refund.networks import BASE, ETHEREUM, get_createx_address, get_network

# Published CreateX / Solady CREATE3 proxy init code hash
CREATEX_PROXY_INITCODE_HASH = "21c35dbe1b344a2488cf3321d6ce542f8e9f305544ff09e4993a62319a497c1f"


class TestCreateFormulas:
    def test_proxy_initcode_hash_matches_createx(self):
        assert keccak(CREATE3_PROXY_INITCODE).hex() == CREATEX_PROXY_INITCODE_HASH
        assert bytes(CREATE3_PROXY_INITCODE_HASH).hex() == CREATEX_PROXY_INITCODE_HASH

    @pytest.mark.parametrize(
        "deployer,salt,init_code,expected",
        [
            # EIP-1014 examples 0, 1 and 2
            ("0x" + "00" * 20, "00" * 32, "00", "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38"),
            ("0xdeadbeef" + "00" * 16, "00" * 32, "00", "0xB928f69Bb1D91Cd65274e3c79d8986362984fDA3"),
            (
                "0xdeadbeef" + "00" * 16,
                "00" * 12 + "feed" + "00" * 18,
                "00",
                "0xD04116cDd17beBE565EB2422F2497E06cC1C9833",
            ),
        ],
    )
    def test_create2_known_answers(self, deployer, salt, init_code, expected):
        result = compute_create2_address(deployer, bytes.fromhex(salt), keccak(bytes.fromhex(init_code)))
        assert addresses_equal(result, expected)

    @pytest.mark.parametrize(
        "nonce,expected",
        [
            (0, "0xcd234a471b72ba2f1ccf0a70fcaba648a5eecd8d"),
            (1, "0x343c43a37d37dff08ae8c4a11544c718abb4fcf8"),
        ],
    )
    def test_create_known_answers(self, nonce, expected):
        result = compute_create_address("0x6ac7ea33f8831ea9dcc53393aaa88b25a785dbf0", nonce)
        assert addresses_equal(result, expected)

    def test_create_rejects_multi_byte_nonce(self):
        with pytest.raises(ValueError):
            compute_create_address(CREATEX, 0x80)

    def test_create3_is_first_create_of_create2_proxy(self):
        salt = bytes(compute_relay_salt(FACTORY, MERCHANT))
        proxy = compute_create2_address(CREATEX, salt, keccak(CREATE3_PROXY_INITCODE))

        assert compute_create3_address(CREATEX, salt) == compute_create_address(proxy, 1)
        assert compute_relay_address(CREATEX, FACTORY, MERCHANT) == compute_create3_address(CREATEX, salt)


class TestComputeRelayAddress:
    def test_is_deterministic(self):
        first = compute_relay_address(CREATEX, FACTORY, MERCHANT)
        second = compute_relay_address(CREATEX, FACTORY, MERCHANT)
        assert first == second

    def test_returns_checksummed_address(self):
        result = compute_relay_address(CREATEX, FACTORY, MERCHANT)
        assert result == to_checksum_address(result)
        assert len(result) == 42

    def test_input_casing_does_not_matter(self):
        lower = compute_relay_address(CREATEX.lower(), FACTORY.lower(), MERCHANT.lower())
        checksummed = compute_relay_address(
            to_checksum_address(CREATEX),
            to_checksum_address(FACTORY),
            to_checksum_address(MERCHANT),
        )
        upper = compute_relay_address(
            "0x" + CREATEX[2:].upper(), "0x" + FACTORY[2:].upper(), "0x" + MERCHANT[2:].upper()
        )
        assert lower == checksummed == upper

    def test_depends_on_merchant(self):
        other_merchant = "0x" + "11" * 20
        assert compute_relay_address(CREATEX, FACTORY, MERCHANT) != compute_relay_address(
            CREATEX, FACTORY, other_merchant
        )

    def test_depends_on_factory(self):
        other_factory = "0x" + "22" * 20
        assert compute_relay_address(CREATEX, FACTORY, MERCHANT) != compute_relay_address(
            CREATEX, other_factory, MERCHANT
        )

    def test_depends_on_deployer(self):
        other_deployer = "0x" + "c0" * 20
        assert compute_relay_address(CREATEX, FACTORY, MERCHANT) != compute_relay_address(
            other_deployer, FACTORY, MERCHANT
        )

    @pytest.mark.parametrize(
        "createx,factory,merchant",
        [
            ("0x1234", FACTORY, MERCHANT),
            (CREATEX, "not-an-address", MERCHANT),
            (CREATEX, FACTORY, "0x" + "zz" * 20),
            (CREATEX, FACTORY, "0x" + "11" * 21),
        ],
    )
    def test_invalid_address_raises(self, createx, factory, merchant):
        with pytest.raises(InvalidAddressError) as exc_info:
            compute_relay_address(createx, factory, merchant)
        assert exc_info.value.kind == "InvalidAddress"


class TestAddressHelpers:
    def test_salt_is_guarded(self):
        salt = compute_relay_salt(FACTORY, MERCHANT)
        raw = keccak(encode_packed(["address", "address"], [to_checksum_address(FACTORY), to_checksum_address(MERCHANT)]))
        assert bytes(salt) == keccak(encode(["bytes32"], [raw]))
        assert bytes(salt) != raw

    def test_create3_rejects_short_salt(self):
        with pytest.raises(ValueError):
            compute_create3_address(CREATEX, b"\x00" * 31)

    def test_normalize_address_checksums(self):
        assert normalize_address(MERCHANT) == to_checksum_address(MERCHANT)

    def test_normalize_address_rejects_non_string(self):
        with pytest.raises(InvalidAddressError):
            normalize_address(None, "payTo")

    def test_addresses_equal_ignores_case(self):
        assert addresses_equal(MERCHANT, to_checksum_address(MERCHANT))
        assert not addresses_equal(MERCHANT, FACTORY)


class TestNetworks:
    def test_lookup_by_caip2_and_name(self):
        assert get_network("eip155:8453") is BASE
        assert get_network("BASE") is BASE

    def test_standard_createx_addresses(self):
        base = "0xba5Ed099633D3B313e4D5F7bdc1305d3c28ba5Ed"
        assert addresses_equal(get_createx_address("eip155:8453"), base)
        assert addresses_equal(get_createx_address("eip155:84532"), base)
        assert addresses_equal(get_createx_address("eip155:1"), base)
        assert addresses_equal(ETHEREUM.createx_address, BASE.createx_address)

    def test_unknown_network(self):
        assert get_network("eip155:999999") is None
        assert get_createx_address("eip155:999999") is None
