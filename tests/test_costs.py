from __future__ import annotations

import pytest

from taskmaster.costing import (
    FixedPriceFeed,
    LivePriceFeed,
    PriceTable,
    format_ether,
    load_pricing_from_env,
    make_price_feed,
    to_wei,
)
from taskmaster.costs import CostLedger, JsonlCostStore
from taskmaster.schemas import CostCategory, RevenueCategory


def test_wei_conversions_are_exact() -> None:
    assert to_wei("0.003") == 3 * 10**15
    assert format_ether(3 * 10**15) == "0.003"
    assert format_ether(0) == "0"
    assert format_ether(10**18) == "1"
    with pytest.raises(ValueError):
        to_wei("-1")
    with pytest.raises(ValueError):
        to_wei("three")


def test_price_feed_converts_both_ways() -> None:
    feed = FixedPriceFeed(2500)
    assert feed.wei_to_usd(to_wei("0.002")) == pytest.approx(5.0)
    assert feed.usd_to_wei(5.0) == to_wei("0.002")
    with pytest.raises(ValueError):
        FixedPriceFeed(0)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_live_price_is_cached_for_the_ttl() -> None:
    quotes = [3000.0, 2000.0]
    clock = _Clock()
    feed = LivePriceFeed(2500, fetch=lambda: quotes.pop(0), ttl_s=300, clock=clock)

    assert feed.wei_to_usd(to_wei("1")) == pytest.approx(3000.0)
    clock.now = 299
    assert feed.usd_to_wei(3.0) == to_wei("0.001")
    assert quotes == [2000.0]

    clock.now = 300
    assert feed.usd_per_eth() == pytest.approx(2000.0)
    assert quotes == []


def test_live_price_falls_back_when_the_fetch_fails() -> None:
    clock = _Clock()
    answers: list = [OSError("connection refused"), 3000.0, KeyError("ethereum"), -1.0]

    def fetch() -> float:
        answer = answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    feed = LivePriceFeed(2500, fetch=fetch, ttl_s=60, clock=clock)
    # nothing fetched yet: the configured price
    assert feed.usd_per_eth() == pytest.approx(2500.0)
    clock.now = 60
    assert feed.usd_per_eth() == pytest.approx(3000.0)
    # later failures and nonsense quotes keep the last good price
    clock.now = 120
    assert feed.usd_per_eth() == pytest.approx(3000.0)
    clock.now = 180
    assert feed.usd_per_eth() == pytest.approx(3000.0)
    assert answers == []


def test_price_feed_mode_selects_the_implementation() -> None:
    assert isinstance(make_price_feed(mode="fixed", usd_per_eth=2500), FixedPriceFeed)
    live = make_price_feed(mode="live", usd_per_eth=2500, fetch=lambda: 1800.0)
    assert isinstance(live, LivePriceFeed)
    assert live.usd_per_eth() == pytest.approx(1800.0)
    with pytest.raises(ValueError, match="unknown price feed mode"):
        make_price_feed(mode="oracle", usd_per_eth=2500)


def test_price_table_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKMASTER_PRICING_JSON", '{"verify-task-": 0.08}')
    table = PriceTable.from_env()
    assert table.price("verify-task-12") == 0.08
    assert table.price("decompose-job") == 0.02

    monkeypatch.setenv("TASKMASTER_PRICING_JSON", '{"verify-task-": -1}')
    with pytest.raises(ValueError, match="negative"):
        load_pricing_from_env()


def test_unknown_operation_needs_explicit_category() -> None:
    costs = CostLedger().init()
    with pytest.raises(ValueError, match="unknown operation"):
        costs.log_cost("mystery")
    entry = costs.log_cost("mystery", category=CostCategory.STORAGE, amount_usd=0.5)
    assert entry.amount_usd == 0.5


def test_logging_requires_init() -> None:
    with pytest.raises(RuntimeError, match="not running"):
        CostLedger().log_cost("decompose-job")


def test_history_survives_restart(tmp_path) -> None:
    costs = CostLedger(store=JsonlCostStore(tmp_path)).init()
    costs.log_cost("decompose-job", job_id=1)
    costs.log_cost("verify-task-3", job_id=1)
    costs.log_storage_fetch(job_id=1)
    costs.log_revenue(RevenueCategory.JOB_PROFIT, 7.5, operation="job-1", job_id=1)
    costs.mark_reimbursed(0.05, "0xtx")

    reloaded = CostLedger(store=JsonlCostStore(tmp_path)).init()
    assert [c.operation for c in reloaded.costs] == ["decompose-job", "verify-task-3", "storage-gateway"]
    assert reloaded.total_revenue() == pytest.approx(7.5)
    assert reloaded.storage_usage().gateway_fetches == 1
    assert reloaded.unreimbursed_offchain_cost() == pytest.approx(0.02)


def test_store_failure_is_logged_and_memory_stays_authoritative(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    costs = CostLedger(store=JsonlCostStore(blocker)).init()

    costs.log_cost("decompose-job")
    assert costs.total_cost() == pytest.approx(0.02)


def test_report_groups_by_operation_and_category() -> None:
    costs = CostLedger().init()
    for _ in range(2):
        costs.log_cost("verify-task-1", job_id=1)
    costs.log_cost("approveTask-1", job_id=1)
    costs.log_revenue(RevenueCategory.JOB_PROFIT, 1.0, job_id=1)

    report = costs.report()
    (verify,) = report.lines[CostCategory.ORACLE_CALL.value]
    assert verify.label == "Oracle · Verification"
    assert verify.calls == 2
    assert verify.total_cost == pytest.approx(0.10)
    assert report.lines[CostCategory.LEDGER_FEE.value][0].calls == 1
    assert report.net_profit == pytest.approx(1.0 - 0.101)
    assert report.autonomy.revenue_per_job == pytest.approx(1.0)
    assert costs.job_economics(1).net == pytest.approx(1.0 - 0.101)
    # ledger fees are paid on-ledger and are not owed back to the operator
    assert costs.unreimbursed_offchain_cost() == pytest.approx(0.10)
