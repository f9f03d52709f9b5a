"""
Classification of opaque chain failures.

RPC clients wrap the interesting part of a failure (HTTP status, revert
reason, ABI-encoded revert data) somewhere in a chain of causes. The
classifier walks that chain and applies an ordered list of predicates;
the first match wins:

1. rate limit (HTTP 429 or a rate-limit message)
2. structured revert reason
3. ABI-encoded ``Error(string)`` revert data
4. revert reason embedded in the error message
5. fallback diagnostic

Each predicate is a plain function returning a :class:`Classification` or
None, so they can be tested and recombined independently. Classification
never raises.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Sequence

import httpx
from eth_abi import decode
from hexbytes import HexBytes

logger = logging.getLogger(__name__)

# Error(string) selector
ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")

GENERIC_REVERT_REASON = "execution reverted"

RATE_LIMIT_MARKERS = ("rate limit", "too many requests")

INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "exceeds the balance",
    "insufficient balance",
    "the total cost",
)

KIND_RATE_LIMITED = "RateLimited"
KIND_REVERT_REASON = "RevertReason"
KIND_UNKNOWN_REVERT = "UnknownRevert"

DEPOSIT_FALLBACK_DIAGNOSTIC = (
    "Contract execution reverted (no specific revert reason available). "
    "All pre-checks passed: proxy immutables readable, merchant registered, nonce unused. "
    "Possible failure points in executeDeposit: "
    "1) ERC3009 transferWithAuthorization failing when called through the proxy, "
    "2) transfer to escrow failing, "
    "3) Escrow.noteDeposit failing (paused pool or unsupported asset). "
    "Use a transaction trace on the failed transaction to find the exact revert point."
)


@dataclass(frozen=True)
class Classification:
    kind: str
    message: str
    reason: Optional[str] = None


Predicate = Callable[[BaseException], Optional[Classification]]


def iter_error_chain(error: BaseException) -> Iterator[Any]:
    """
    Yield the error and every error reachable through its causes.

    Follows ``__cause__``, ``__context__`` and a ``cause`` attribute (used by
    some RPC client wrappers), visiting each object once.
    """
    seen: set[int] = set()
    stack: list[Any] = [error]
    while stack:
        current = stack.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for attr in ("__cause__", "cause", "__context__"):
            nested = getattr(current, attr, None)
            if nested is not None and not isinstance(nested, (str, bytes)):
                stack.append(nested)


def _message_of(error: Any) -> str:
    for attr in ("message", "details", "short_message"):
        value = getattr(error, attr, None)
        if isinstance(value, str) and value:
            return value
    return str(error)


def _status_of(error: Any) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None) or getattr(response, "status", None)
        if isinstance(value, int):
            return value
    return None


def _as_bytes(data: Any) -> Optional[bytes]:
    if isinstance(data, dict):
        data = data.get("data")
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str) and data.startswith("0x"):
        try:
            return bytes(HexBytes(data))
        except ValueError:
            return None
    return None


def decode_revert_reason(data: Any) -> Optional[str]:
    """
    Decode ABI-encoded ``Error(string)`` revert data.

    Args:
        data: Hex string or bytes (selector + offset + length + payload)

    Returns:
        The revert string with padding stripped, or None
    """
    raw = _as_bytes(data)
    if raw is None or not raw.startswith(ERROR_STRING_SELECTOR):
        return None
    try:
        (reason,) = decode(["string"], raw[len(ERROR_STRING_SELECTOR):])
    except Exception:
        # Truncated or non-canonical payload: fall back to manual slicing
        body = raw[len(ERROR_STRING_SELECTOR) + 32:]
        if len(body) < 32:
            return None
        length = int.from_bytes(body[:32], "big")
        reason = body[32:32 + length].decode("utf-8", errors="ignore")
    reason = reason.replace("\x00", "").strip()
    return reason or None


# =============================================================================
# Predicates
# =============================================================================


def match_rate_limit(error: BaseException) -> Optional[Classification]:
    for current in iter_error_chain(error):
        if _status_of(current) == 429:
            return Classification(KIND_RATE_LIMITED, "HTTP 429 from RPC provider")
        message = _message_of(current).lower()
        if any(marker in message for marker in RATE_LIMIT_MARKERS):
            return Classification(KIND_RATE_LIMITED, _message_of(current))
    return None


def match_revert_reason(error: BaseException) -> Optional[Classification]:
    for current in iter_error_chain(error):
        reason = getattr(current, "reason", None)
        if isinstance(reason, str) and reason and reason != GENERIC_REVERT_REASON:
            return Classification(KIND_REVERT_REASON, f"Contract reverted: {reason}", reason)
    return None


def match_revert_data(error: BaseException) -> Optional[Classification]:
    for current in iter_error_chain(error):
        reason = decode_revert_reason(getattr(current, "data", None))
        if reason and reason != GENERIC_REVERT_REASON:
            return Classification(KIND_REVERT_REASON, f"Contract reverted: {reason}", reason)
    return None


_REVERT_MESSAGE_RE = re.compile(r"reverted(?:[: ]+)(.+)", re.IGNORECASE)


def match_revert_message(error: BaseException) -> Optional[Classification]:
    for current in iter_error_chain(error):
        match = _REVERT_MESSAGE_RE.search(_message_of(current))
        if match:
            reason = match.group(1).strip()
            if reason and reason.lower() != GENERIC_REVERT_REASON:
                return Classification(
                    KIND_REVERT_REASON, f"Contract reverted: {reason}", reason
                )
    return None


def deposit_fallback(error: BaseException) -> Classification:
    return Classification(
        KIND_UNKNOWN_REVERT,
        f"{DEPOSIT_FALLBACK_DIAGNOSTIC} Original error: {_message_of(error)}",
    )


DEFAULT_PREDICATES: tuple[Predicate, ...] = (
    match_rate_limit,
    match_revert_reason,
    match_revert_data,
    match_revert_message,
)


class ErrorClassifier:
    """
    Ordered chain of classification predicates with a fallback.

    Example:
        >>> classifier = ErrorClassifier()
        >>> classifier.classify(error).message
        'Contract reverted: FiatTokenV2: invalid signature'
    """

    def __init__(
        self,
        predicates: Sequence[Predicate] = DEFAULT_PREDICATES,
        fallback: Callable[[BaseException], Classification] = deposit_fallback,
    ):
        self.predicates = tuple(predicates)
        self.fallback = fallback

    def classify(self, error: BaseException) -> Classification:
        for predicate in self.predicates:
            try:
                result = predicate(error)
            except Exception:
                logger.debug("Classifier predicate %s failed", predicate.__name__, exc_info=True)
                continue
            if result is not None:
                return result
        return self.fallback(error)

    def describe(self, error: BaseException) -> str:
        return self.classify(error).message


def is_rate_limit_error(error: BaseException) -> bool:
    """Check whether an error (or any of its causes) is a rate-limit response."""
    return match_rate_limit(error) is not None


def is_insufficient_funds_error(error: BaseException) -> bool:
    """Check whether an error reports that the sender cannot pay for gas."""
    for current in iter_error_chain(error):
        message = str(current).lower()
        if any(marker in message for marker in INSUFFICIENT_FUNDS_MARKERS):
            return True
    return False
