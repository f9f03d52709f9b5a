"""
Merchant-side helpers for the refund extension.

Merchants mark payment options with :func:`refundable` and run their route
configuration through :func:`with_refund`. Refundable options get their
``payTo`` replaced by the merchant's deterministic relay proxy address, and
the route gains a ``refund`` extension mapping each proxy back to the
merchant payout address, so a facilitator can deploy the proxy on first
use.

Route configurations are plain dicts in x402 wire shape::

    routes = {
        "/api": {
            "accepts": refundable({
                "scheme": "exact",
                "payTo": "0xMerchant...",
                "price": "$0.01",
                "network": "eip155:84532",
            }),
        },
    }
    processed = with_refund(routes, FACTORY_ADDRESS)

All helpers return new objects and never mutate their inputs.
"""

import copy
from typing import Any, Mapping, Optional

from .address import compute_relay_address, normalize_address
from .errors import ConfigurationError
from .networks import get_createx_address
from .types import (
    REFUND_EXTENSION_KEY,
    REFUND_MARKER_KEY,
    RefundExtension,
    RefundExtensionInfo,
)

PaymentOption = dict[str, Any]
RouteConfig = dict[str, Any]


def declare_refund_extension(
    factory_address: str,
    merchant_payouts: Mapping[str, str],
) -> dict[str, dict[str, Any]]:
    """
    Declare a refund extension.

    Args:
        factory_address: The X402DepositRelayFactory contract address
        merchant_payouts: Map of proxy address to merchant payout address

    Returns:
        ``{"refund": {"info": ..., "schema": ...}}`` in wire form
    """
    extension = RefundExtension(
        info=RefundExtensionInfo(
            factory_address=factory_address,
            merchant_payouts=dict(merchant_payouts),
        )
    )
    return {REFUND_EXTENSION_KEY: extension.model_dump(by_alias=True)}


def refundable(option: Mapping[str, Any]) -> PaymentOption:
    """Return a copy of ``option`` marked as refundable."""
    marked = copy.deepcopy(dict(option))
    extra = dict(marked.get("extra") or {})
    extra[REFUND_MARKER_KEY] = True
    marked["extra"] = extra
    return marked


def is_refundable_option(option: Mapping[str, Any]) -> bool:
    extra = option.get("extra")
    return isinstance(extra, Mapping) and extra.get(REFUND_MARKER_KEY) is True


def _options(config: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    accepts = config.get("accepts")
    if isinstance(accepts, list):
        return accepts
    if accepts is None:
        return []
    return [accepts]


def _resolve_createx(network: str, createx_address: Optional[str]) -> str:
    if createx_address:
        return normalize_address(createx_address, "createx_address")
    standard = get_createx_address(network)
    if standard:
        return standard
    raise ConfigurationError(
        f"CreateX address not provided and no standard address found for network "
        f"{network}. Please provide createx_address or check whether CreateX is "
        f"deployed on this network. See "
        f"https://github.com/pcaversaccio/createx#createx-deployments"
    )


def _process_option(option: Mapping[str, Any], factory_address: str, createx: str) -> PaymentOption:
    processed = copy.deepcopy(dict(option))
    if not is_refundable_option(option):
        return processed

    merchant_payout = option.get("payTo")
    if not isinstance(merchant_payout, str):
        raise ConfigurationError(
            "Refundable option must have a string payTo address. "
            "Dynamic payTo is not supported for refundable options."
        )
    processed["payTo"] = compute_relay_address(createx, factory_address, merchant_payout)
    processed["extra"] = {
        k: v for k, v in processed["extra"].items() if k != REFUND_MARKER_KEY
    }
    return processed


def _process_route(
    config: Mapping[str, Any],
    factory_address: str,
    createx_address: Optional[str],
) -> RouteConfig:
    options = _options(config)
    network = options[0].get("network") if options else None
    if not network:
        raise ConfigurationError(
            "Payment option must have a network field to determine the CreateX address"
        )
    createx = _resolve_createx(network, createx_address)

    merchant_payouts: dict[str, str] = {}
    for option in options:
        if is_refundable_option(option) and isinstance(option.get("payTo"), str):
            proxy = compute_relay_address(createx, factory_address, option["payTo"])
            merchant_payouts[proxy.lower()] = option["payTo"]

    processed = copy.deepcopy(dict(config))
    accepts = config.get("accepts")
    if isinstance(accepts, list):
        processed["accepts"] = [_process_option(o, factory_address, createx) for o in accepts]
    else:
        processed["accepts"] = _process_option(accepts, factory_address, createx)

    if merchant_payouts:
        extensions = dict(processed.get("extensions") or {})
        extensions.update(declare_refund_extension(factory_address, merchant_payouts))
        processed["extensions"] = extensions
    return processed


def with_refund(
    routes: Mapping[str, Any],
    factory_address: str,
    createx_address: Optional[str] = None,
) -> dict[str, Any]:
    """
    Route refundable payment options to their relay proxies.

    Args:
        routes: A single route config (has ``accepts``) or a mapping of
            route pattern to route config
        factory_address: The X402DepositRelayFactory contract address
        createx_address: CreateX address; defaults to the standard
            deployment for the first option's network

    Returns:
        A processed deep copy of ``routes``

    Raises:
        ConfigurationError: Missing network, unknown CreateX deployment or
            non-string ``payTo`` on a refundable option
        InvalidAddressError: Malformed factory, CreateX or payout address
    """
    factory_address = normalize_address(factory_address, "factory_address")
    if "accepts" in routes:
        return _process_route(routes, factory_address, createx_address)
    return {
        pattern: _process_route(config, factory_address, createx_address)
        for pattern, config in routes.items()
    }
