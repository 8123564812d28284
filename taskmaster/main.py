from __future__ import annotations

import argparse
import json
import logging
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path

from taskmaster.checkpoint import CheckpointStore
from taskmaster.clarifier import ClarifyTurn
from taskmaster.config import EngineConfig, load_config, load_provider_settings, repo_root
from taskmaster.content import GatewayContentResolver
from taskmaster.costing import PriceTable, format_ether, make_price_feed, to_wei
from taskmaster.costs import CostLedger, JsonlCostStore
from taskmaster.engine import TaskLifecycleEngine
from taskmaster.errors import ConfigurationError, OracleError, TaskmasterError
from taskmaster.ledger import InMemoryLedger, Ledger
from taskmaster.llm_router import LLMRouter
from taskmaster.oracle import RouterOracle
from taskmaster.reads import read_job, read_job_tasks, read_open_tasks
from taskmaster.reputation import ReputationBook
from taskmaster.scheduler import Scheduler
from taskmaster.schemas import TERMINAL_JOB_STATUSES, AgentAction, TaskStatus
from taskmaster.verifier import VerificationPipeline
from taskmaster.watcher import EventWatcher

logger = logging.getLogger("taskmaster")


@dataclass(frozen=True)
class Services:
    engine: TaskLifecycleEngine
    watcher: EventWatcher
    scheduler: Scheduler
    costs: CostLedger


def build_services(cfg: EngineConfig, *, ledger: Ledger, deterministic: bool = False) -> Services:
    """Wire the engine and its collaborators from configuration."""
    oracle = RouterOracle(router=LLMRouter.from_settings(load_provider_settings()), model_ref=cfg.oracle_model)
    costs = CostLedger(store=JsonlCostStore(cfg.state_dir), prices=PriceTable.from_env()).init()
    resolver = GatewayContentResolver(gateway=cfg.ipfs_gateway, on_fetch=lambda: costs.log_storage_fetch())
    verifier = VerificationPipeline(
        oracle=oracle,
        resolver=resolver,
        threshold=cfg.verification_threshold,
        deterministic=deterministic,
        max_workers=cfg.verification_workers,
    )
    price_feed = make_price_feed(
        mode=cfg.price_feed_mode,
        usd_per_eth=cfg.eth_usd_price,
        url=cfg.price_feed_url,
        ttl_s=cfg.price_cache_ttl_s,
    )
    engine = TaskLifecycleEngine(
        ledger=ledger,
        oracle=oracle,
        verifier=verifier,
        costs=costs,
        config=cfg,
        reputation=ReputationBook(cfg.state_dir / "reputation.json"),
        price_feed=price_feed,
        deterministic=deterministic,
    )
    watcher = EventWatcher(
        ledger=ledger,
        engine=engine,
        checkpoints=CheckpointStore(cfg.state_dir / "checkpoint.json"),
        deployment_block=cfg.deployment_block,
        poll_interval_s=cfg.poll_interval_s,
    )
    scheduler = Scheduler(engine=engine, ledger=ledger, costs=costs, config=cfg, price_feed=price_feed)
    return Services(engine=engine, watcher=watcher, scheduler=scheduler, costs=costs)


def serve(services: Services, *, stop: threading.Event, duration_s: float | None = None) -> None:
    """Recover, then poll events and run the periodic sweeps until `stop` is set or `duration_s` passes."""
    try:
        services.watcher.recover()
        services.watcher.start()
        services.scheduler.start()
        logger.info("serving until stopped")
        stop.wait(duration_s)
    finally:
        services.scheduler.stop()
        services.watcher.stop()
        services.engine.shutdown()
        services.costs.shutdown()


def _load_history(path: Path | None) -> list[ClarifyTurn]:
    if path is None:
        return []
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise SystemExit(f"history must be a JSON list of {{question, answer}} objects: {path}")
    return [ClarifyTurn.model_validate(item) for item in raw]


def _print_report(costs: CostLedger) -> None:
    report = costs.report()
    for category, lines in report.lines.items():
        if not lines:
            continue
        print(f"{category}:")
        for line in lines:
            print(f"  {line.label:<34} {line.calls:>5} x ${line.cost_per_call:.4f} = ${line.total_cost:.4f}")
    if report.revenue_lines:
        print("revenue:")
        for rev in report.revenue_lines:
            print(f"  {rev.label:<34} {rev.count:>5}       ${rev.amount:.4f}")
    print()
    print(f"total cost     ${report.total_cost:.4f}")
    print(f"total revenue  ${report.total_revenue:.4f}")
    print(f"net profit     ${report.net_profit:.4f}")
    print(f"coverage ratio {report.autonomy.cost_coverage_ratio:.2f}")
    usage = costs.storage_usage()
    print(f"storage        {usage.gateway_fetches} gateway fetches")


def _simulate(cfg: EngineConfig, *, description: str, budget: int, proofs: list[str], max_polls: int) -> int:
    # A fresh ledger must not be paired with checkpoints from an earlier run.
    with tempfile.TemporaryDirectory(prefix="taskmaster-sim-") as tmp:
        return _simulate_in(
            replace(cfg, state_dir=Path(tmp)),
            description=description,
            budget=budget,
            proofs=proofs,
            max_polls=max_polls,
        )


def _simulate_in(cfg: EngineConfig, *, description: str, budget: int, proofs: list[str], max_polls: int) -> int:
    ledger = InMemoryLedger(agent=cfg.agent_address or "0xagent")
    services = build_services(cfg, ledger=ledger, deterministic=True)
    services.engine.channel.subscribe(
        lambda m: print(f"  [{m.type.value}] {m.details}") if isinstance(m, AgentAction) else None
    )
    services.watcher.recover()

    ledger.create_job(client="0xclient", description=description, budget=budget)
    worker = "0xworker"
    pending = list(proofs)
    try:
        for _ in range(max_polls):
            services.watcher.poll_once()
            job = read_job(ledger, 0)
            if job.status in TERMINAL_JOB_STATUSES:
                break
            for task in read_open_tasks(ledger):
                ledger.accept_task(task.job_id, task.id, worker=worker)
            for task in read_job_tasks(ledger, 0):
                if task.status == TaskStatus.ACCEPTED and task.worker == worker:
                    if not pending:
                        print("out of proofs; stopping")
                        return 1
                    ledger.submit_proof(0, task.id, pending.pop(0), worker=worker)
        job = read_job(ledger, 0)
        print(f"job 0: {job.status.value}, spent {format_ether(job.spent)} of {format_ether(job.budget)}")
        print(f"agent balance: {format_ether(ledger.balance_of(ledger.agent))}")
        return 0 if job.status in TERMINAL_JOB_STATUSES else 1
    finally:
        services.engine.shutdown()
        services.costs.shutdown()


def _run(cfg: EngineConfig, *, duration_s: float | None) -> int:
    # A fresh ledger must not be paired with checkpoints from an earlier run.
    with tempfile.TemporaryDirectory(prefix="taskmaster-run-") as tmp:
        run_cfg = replace(cfg, state_dir=Path(tmp))
        services = build_services(run_cfg, ledger=InMemoryLedger(agent=cfg.agent_address or "0xagent"))
        try:
            serve(services, stop=threading.Event(), duration_s=duration_s)
        except KeyboardInterrupt:
            logger.info("interrupted, shutting down")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="taskmaster")
    parser.add_argument("--config", type=Path, default=None, help="YAML config overrides")
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="logging level"
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    clar_p = sub.add_parser("clarify", help="run one clarification round for a job description")
    clar_p.add_argument("description")
    clar_p.add_argument("--budget", required=True, help="budget in ETH, e.g. 0.01")
    clar_p.add_argument("--history", type=Path, default=None, help="JSON list of prior {question, answer}")

    dec_p = sub.add_parser("decompose", help="decompose a job description into a task plan")
    dec_p.add_argument("description")
    dec_p.add_argument("--budget", required=True, help="budget in ETH, e.g. 0.01")

    sub.add_parser("report", help="print the cost/revenue report from the state directory")
    sub.add_parser("config", help="print the effective configuration")

    sim_p = sub.add_parser("simulate", help="run one job end to end against an in-memory ledger")
    sim_p.add_argument("description")
    sim_p.add_argument("--budget", required=True, help="budget in ETH, e.g. 0.01")
    sim_p.add_argument("--proof", action="append", default=[], help="proof reference, one per submission")
    sim_p.add_argument("--max-polls", type=int, default=20)

    run_p = sub.add_parser("run", help="serve events and periodic sweeps against an in-memory ledger")
    run_p.add_argument("--duration", type=float, default=None, help="seconds to run; default until interrupted")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = load_config(args.config)
    except ConfigurationError as e:
        raise SystemExit(f"configuration error: {e}") from e

    if args.cmd == "config":
        settings = load_provider_settings()
        print(f"env file:       {repo_root() / '.env'}")
        for key, value in sorted(vars(cfg).items()):
            print(f"{key:<28} {value}")
        print(f"{'openai key':<28} {'set' if settings.openai_api_key else 'not set'}")
        print(f"{'anthropic key':<28} {'set' if settings.anthropic_api_key else 'not set'}")
        print(f"{'ollama url':<28} {settings.ollama_base_url}")
        return 0

    if args.cmd == "report":
        costs = CostLedger(store=JsonlCostStore(cfg.state_dir), prices=PriceTable.from_env()).init()
        _print_report(costs)
        return 0

    if args.cmd == "run":
        return _run(cfg, duration_s=args.duration)

    try:
        budget = to_wei(args.budget)
    except ValueError as e:
        raise SystemExit(str(e)) from e
    if budget <= 0:
        raise SystemExit("budget must be positive")

    if args.cmd == "simulate":
        return _simulate(cfg, description=args.description, budget=budget, proofs=args.proof, max_polls=args.max_polls)

    services = build_services(cfg, ledger=InMemoryLedger(), deterministic=True)
    try:
        if args.cmd == "clarify":
            result = services.engine.clarify(args.description, budget, _load_history(args.history))
            print(result.model_dump_json(by_alias=True, indent=2))
            return 0
        if args.cmd == "decompose":
            plan = services.engine.decompose(args.description, budget)
            print(plan.model_dump_json(by_alias=True, indent=2))
            return 0
    except OracleError as e:
        print(f"oracle error: {e}")
        return 1
    except TaskmasterError as e:
        logger.error("%s failed: %s", args.cmd, e)
        return 1
    finally:
        services.engine.shutdown()
        services.costs.shutdown()
    raise SystemExit(f"unknown command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
