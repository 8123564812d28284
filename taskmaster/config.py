from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv

from taskmaster.errors import ConfigurationError


def repo_root() -> Path:
    # Project root is the directory that contains the `taskmaster/` package.
    return Path(__file__).resolve().parents[1]


def load_env() -> None:
    # Prefer a project-local `.env`; fall back to searching from CWD.
    root_env = repo_root() / ".env"
    env_path = str(root_env) if root_env.exists() else (find_dotenv(usecwd=True) or str(root_env))
    load_dotenv(env_path)


@dataclass(frozen=True)
class ProviderSettings:
    openai_api_key: str | None
    openai_base_url: str | None
    anthropic_api_key: str | None
    anthropic_base_url: str | None
    ollama_base_url: str


def load_provider_settings() -> ProviderSettings:
    load_env()
    return ProviderSettings(
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        anthropic_base_url=os.getenv("ANTHROPIC_BASE_URL") or None,
        ollama_base_url=(os.getenv("OLLAMA_BASE_URL") or "http://127.0.0.1:11434").strip(),
    )


@dataclass(frozen=True)
class EngineConfig:
    network: str = "localhost"
    oracle_model: str = "openai:gpt-4o"

    # Verification threshold is tunable; observed deployments used 0.75 and 0.80.
    verification_threshold: float = 0.75
    clarify_max_rounds: int = 5
    default_max_retries: int = 3
    # Minimum share of the budget the agent keeps after human rewards.
    profit_margin: float = 0.2

    expiry_interval_s: float = 300.0
    reimbursement_interval_s: float = 600.0
    reimbursement_threshold_usd: float = 0.05
    reimbursement_enabled: bool = False
    operator_address: str | None = None
    agent_address: str | None = None

    ipfs_gateway: str = "https://gateway.pinata.cloud"
    deployment_block: int = 0
    state_dir: Path = Path(".taskmaster")
    eth_usd_price: float = 2500.0
    # "fixed" uses eth_usd_price; "live" polls price_feed_url and falls back to it.
    price_feed_mode: str = "fixed"
    price_feed_url: str = "https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd"
    price_cache_ttl_s: float = 300.0
    poll_interval_s: float = 2.0

    bonuses_enabled: bool = False
    verification_workers: int = 3

    def validate(self) -> "EngineConfig":
        if not 0.0 <= self.verification_threshold <= 1.0:
            raise ConfigurationError("verification_threshold must be within [0, 1]")
        if self.clarify_max_rounds < 1:
            raise ConfigurationError("clarify_max_rounds must be >= 1")
        if not 0.0 <= self.profit_margin < 1.0:
            raise ConfigurationError("profit_margin must be within [0, 1)")
        if self.default_max_retries < 0:
            raise ConfigurationError("default_max_retries must be >= 0")
        if self.reimbursement_enabled and not self.operator_address:
            raise ConfigurationError(
                "reimbursement is enabled but no operator address is configured "
                "(set TASKMASTER_OPERATOR_ADDRESS)"
            )
        if self.eth_usd_price <= 0:
            raise ConfigurationError("eth_usd_price must be > 0")
        if self.price_feed_mode not in ("fixed", "live"):
            raise ConfigurationError(f"price_feed_mode must be fixed or live, got {self.price_feed_mode!r}")
        if self.poll_interval_s <= 0:
            raise ConfigurationError("poll_interval_s must be > 0")
        return self


_BOOL_TRUE = {"1", "true", "yes", "on"}
_BOOL_FALSE = {"0", "false", "no", "off", ""}


def _coerce(name: str, raw: Any, current: Any) -> Any:
    if raw is None:
        return None
    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        s = str(raw).strip().lower()
        if s in _BOOL_TRUE:
            return True
        if s in _BOOL_FALSE:
            return False
        raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")
    if isinstance(current, Path):
        return Path(str(raw)).expanduser()
    try:
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be numeric, got {raw!r}") from e
    s = str(raw).strip()
    return s or None


def _overrides_from_env(environ: Mapping[str, str], base: EngineConfig) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(EngineConfig):
        key = f"TASKMASTER_{f.name.upper()}"
        if key in environ:
            out[f.name] = _coerce(key, environ[key], getattr(base, f.name))
    return out


def _overrides_from_yaml(path: Path, base: EngineConfig) -> dict[str, Any]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"config file must be a mapping: {path}")
    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"unknown config keys in {path}: {', '.join(unknown)}")
    return {k: _coerce(k, v, getattr(base, k)) for k, v in raw.items()}


def load_config(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Build the engine configuration: defaults, then YAML file, then TASKMASTER_* env vars."""
    if environ is None:
        load_env()
        environ = os.environ

    cfg = EngineConfig(state_dir=repo_root() / ".taskmaster")
    cfg_path = path
    if cfg_path is None and environ.get("TASKMASTER_CONFIG"):
        cfg_path = Path(environ["TASKMASTER_CONFIG"]).expanduser()
    if cfg_path is not None:
        if not cfg_path.exists():
            raise ConfigurationError(f"config file not found: {cfg_path}")
        cfg = replace(cfg, **_overrides_from_yaml(cfg_path, cfg))

    cfg = replace(cfg, **_overrides_from_env(environ, cfg))
    return cfg.validate()
