from __future__ import annotations

import json

import pytest

import taskmaster.main as cli

from tests.helpers import ScriptedOracle, StaticResolver, happy_script


@pytest.fixture
def offline(monkeypatch, tmp_path) -> ScriptedOracle:
    oracle = ScriptedOracle(happy_script())
    monkeypatch.setenv("TASKMASTER_STATE_DIR", str(tmp_path))
    monkeypatch.setattr(cli, "RouterOracle", lambda **_kw: oracle)
    monkeypatch.setattr(cli, "GatewayContentResolver", lambda **_kw: StaticResolver())
    return oracle


def test_config_prints_effective_values(offline, capsys) -> None:
    assert cli.main(["config"]) == 0
    out = capsys.readouterr().out
    assert "verification_threshold" in out
    assert "ollama url" in out


def test_report_on_empty_state(offline, capsys) -> None:
    assert cli.main(["report"]) == 0
    assert "net profit" in capsys.readouterr().out


def test_decompose_prints_normalized_plan(offline, capsys) -> None:
    assert cli.main(["decompose", "Put up flyers", "--budget", "0.01"]) == 0
    plan = json.loads(capsys.readouterr().out)
    assert [t["reward"] for t in plan["tasks"]] == ["0.003", "0.004"]
    assert offline.count("DecompositionPlan") == 1


def test_bad_budget_exits() -> None:
    with pytest.raises(SystemExit):
        cli.main(["decompose", "x", "--budget", "plenty"])


def test_simulate_runs_job_to_completion(offline, capsys) -> None:
    code = cli.main(
        ["simulate", "Put up flyers", "--budget", "0.01", "--proof", "ipfs://p0", "--proof", "ipfs://p1"]
    )
    out = capsys.readouterr().out
    assert code == 0
    assert "job 0: Completed" in out


def test_run_serves_for_the_given_duration_and_shuts_down(offline, monkeypatch) -> None:
    started: list[str] = []
    real_serve = cli.serve

    def serve(services, **kw):
        start = services.scheduler.start

        def start_and_record() -> None:
            start()
            started.append("scheduler")

        monkeypatch.setattr(services.scheduler, "start", start_and_record)
        real_serve(services, **kw)
        started.append("stopped")
        assert services.watcher.recovered
        assert services.scheduler.threads == ()

    monkeypatch.setattr(cli, "serve", serve)
    assert cli.main(["run", "--duration", "0.2"]) == 0
    assert started == ["scheduler", "stopped"]
