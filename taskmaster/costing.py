from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Protocol
from urllib import request

from taskmaster.schemas import CostCategory

logger = logging.getLogger(__name__)

WEI_PER_ETH = 10**18


def to_wei(amount: str | int | float | Decimal) -> int:
    """Parse a decimal currency amount (e.g. "0.003") into integer wei."""
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise ValueError(f"not a decimal amount: {amount!r}") from e
    if not value.is_finite() or value < 0:
        raise ValueError(f"amount must be a non-negative finite number: {amount!r}")
    return int(value * WEI_PER_ETH)


def format_ether(wei: int) -> str:
    text = format(Decimal(int(wei)) / WEI_PER_ETH, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


@dataclass(frozen=True)
class OperationPrice:
    category: CostCategory
    prefix: str
    label: str
    usd_per_call: float


# Flat per-call costs in USD, keyed by operation-label prefix. Ledger fees are
# reported per call site; gateway reads are free until a paid plan is configured.
DEFAULT_OPERATIONS: tuple[OperationPrice, ...] = (
    OperationPrice(CostCategory.ORACLE_CALL, "clarify-job", "Oracle · Clarification", 0.02),
    OperationPrice(CostCategory.ORACLE_CALL, "decompose-job", "Oracle · Decomposition", 0.02),
    OperationPrice(CostCategory.ORACLE_CALL, "ai-task-", "Oracle · Agent Task Execution", 0.02),
    OperationPrice(CostCategory.ORACLE_CALL, "verify-task-", "Oracle · Verification", 0.05),
    OperationPrice(CostCategory.LEDGER_FEE, "addTask-", "Fee · Add Task", 0.001),
    OperationPrice(CostCategory.LEDGER_FEE, "approveTask-", "Fee · Approve Task", 0.001),
    OperationPrice(CostCategory.LEDGER_FEE, "rejectProof-", "Fee · Reject Proof", 0.001),
    OperationPrice(CostCategory.LEDGER_FEE, "expireTask-", "Fee · Expire Task", 0.001),
    OperationPrice(CostCategory.LEDGER_FEE, "completeJob-", "Fee · Complete Job", 0.001),
    OperationPrice(CostCategory.LEDGER_FEE, "reputation-bonus", "Fee · Reputation Bonus", 0.001),
    OperationPrice(CostCategory.LEDGER_FEE, "reimburse-", "Fee · Reimbursement", 0.001),
    OperationPrice(CostCategory.STORAGE, "storage-gateway", "Storage · Gateway Fetch", 0.0),
)


def load_pricing_from_env() -> dict[str, float]:
    """Per-prefix USD overrides from TASKMASTER_PRICING_JSON, e.g. {"verify-task-": 0.08}."""
    raw = (os.getenv("TASKMASTER_PRICING_JSON") or "").strip()
    if not raw:
        return {}

    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("TASKMASTER_PRICING_JSON must be a JSON object")

    out: dict[str, float] = {}
    for k, v in parsed.items():
        if not isinstance(k, str) or isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("TASKMASTER_PRICING_JSON must map operation prefixes to numbers")
        if v < 0:
            raise ValueError(f"negative price for {k!r}")
        out[k] = float(v)
    return out


class PriceTable:
    def __init__(self, overrides: dict[str, float] | None = None) -> None:
        overrides = overrides or {}
        self.operations = tuple(
            OperationPrice(op.category, op.prefix, op.label, overrides.get(op.prefix, op.usd_per_call))
            for op in DEFAULT_OPERATIONS
        )

    @classmethod
    def from_env(cls) -> "PriceTable":
        return cls(load_pricing_from_env())

    def lookup(self, operation: str) -> OperationPrice | None:
        for op in self.operations:
            if operation.startswith(op.prefix):
                return op
        return None

    def price(self, operation: str) -> float:
        op = self.lookup(operation)
        if op is None:
            raise KeyError(f"no price for operation {operation!r}")
        return op.usd_per_call


class FixedPriceFeed:
    """Converts between wei and USD at a configured exchange rate."""

    def __init__(self, usd_per_eth: float) -> None:
        if usd_per_eth <= 0:
            raise ValueError("usd_per_eth must be > 0")
        self._usd_per_eth = Decimal(str(usd_per_eth))

    def usd_per_eth(self) -> float:
        return float(self._usd_per_eth)

    def wei_to_usd(self, wei: int) -> float:
        return float(Decimal(int(wei)) / WEI_PER_ETH * self._usd_per_eth)

    def usd_to_wei(self, usd: float) -> int:
        return int(Decimal(str(usd)) / self._usd_per_eth * WEI_PER_ETH)


class PriceFeed(Protocol):
    def usd_per_eth(self) -> float: ...

    def wei_to_usd(self, wei: int) -> float: ...

    def usd_to_wei(self, usd: float) -> int: ...


COINGECKO_ETH_USD_URL = "https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd"
PRICE_CACHE_TTL_S = 300.0

RateFetcher = Callable[[], float]


def _coingecko_fetch(url: str, *, timeout_s: float = 10.0) -> float:
    req = request.Request(url=url, method="GET", headers={"Accept": "application/json"})
    with request.urlopen(req, timeout=timeout_s) as resp:
        data = json.loads(resp.read().decode("utf-8"))
    return float(data["ethereum"]["usd"])


class LivePriceFeed:
    """ETH/USD rate from a public price API, cached for `ttl_s` seconds.

    A failed or nonsensical fetch keeps the last good rate, or the fallback
    rate when nothing was fetched yet.
    """

    def __init__(
        self,
        fallback_usd_per_eth: float,
        *,
        url: str = COINGECKO_ETH_USD_URL,
        ttl_s: float = PRICE_CACHE_TTL_S,
        fetch: RateFetcher | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if fallback_usd_per_eth <= 0:
            raise ValueError("fallback_usd_per_eth must be > 0")
        self._fallback = Decimal(str(fallback_usd_per_eth))
        self._fetch = fetch or (lambda: _coingecko_fetch(url))
        self._ttl_s = ttl_s
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._cached: Decimal | None = None
        self._fetched_at: float | None = None

    def usd_per_eth(self) -> float:
        return float(self._rate())

    def _rate(self) -> Decimal:
        with self._lock:
            now = self._clock()
            if self._fetched_at is not None and now - self._fetched_at < self._ttl_s:
                return self._cached if self._cached is not None else self._fallback
            try:
                rate = Decimal(str(self._fetch()))
                if not rate.is_finite() or rate <= 0:
                    raise ValueError(f"bad ETH/USD rate {rate}")
            except (OSError, ValueError, KeyError, TypeError, InvalidOperation) as e:
                fallback = self._cached if self._cached is not None else self._fallback
                logger.warning("ETH/USD fetch failed, using %s: %s", fallback, e)
                # Retry no sooner than the next cache window.
                self._fetched_at = now
                return fallback
            self._cached = rate
            self._fetched_at = now
            return rate

    def wei_to_usd(self, wei: int) -> float:
        return float(Decimal(int(wei)) / WEI_PER_ETH * self._rate())

    def usd_to_wei(self, usd: float) -> int:
        return int(Decimal(str(usd)) / self._rate() * WEI_PER_ETH)


def make_price_feed(
    *,
    mode: str,
    usd_per_eth: float,
    url: str = COINGECKO_ETH_USD_URL,
    ttl_s: float = PRICE_CACHE_TTL_S,
    fetch: RateFetcher | None = None,
) -> PriceFeed:
    if mode == "fixed":
        return FixedPriceFeed(usd_per_eth)
    if mode == "live":
        return LivePriceFeed(usd_per_eth, url=url, ttl_s=ttl_s, fetch=fetch)
    raise ValueError(f"unknown price feed mode {mode!r} (expected 'fixed' or 'live')")
