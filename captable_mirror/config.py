from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

DEFAULT_CONFIG_PATH = "config/indexer.yaml"

# env var -> IndexerConfig field
_ENV_KEYS: Dict[str, str] = {
    "DATABASE_URL": "database_url",
    "SOLANA_RPC_URL": "rpc_url",
    "CAPTABLE_PROGRAM_ID": "program_id",
    "CAPTABLE_COMMITMENT": "commitment",
    "CAPTABLE_MAX_RECONNECT_ATTEMPTS": "max_reconnect_attempts",
    "CAPTABLE_RECONNECT_DELAY_S": "reconnect_delay_s",
    "CAPTABLE_RECONNECT_BACKOFF": "reconnect_backoff",
    "CAPTABLE_HEALTH_CHECK_INTERVAL_S": "health_check_interval_s",
    "CAPTABLE_POLL_INTERVAL_S": "poll_interval_s",
    "CAPTABLE_SIGNATURE_PAGE_SIZE": "signature_page_size",
    "CAPTABLE_RPC_TIMEOUT_S": "rpc_timeout_s",
    "CAPTABLE_RPC_MAX_RETRIES": "rpc_max_retries",
    "CAPTABLE_ENVIRONMENT": "environment",
}


@dataclass(frozen=True)
class IndexerConfig:
    database_url: Optional[str] = None
    rpc_url: str = "http://127.0.0.1:8899"
    program_id: Optional[str] = None
    commitment: str = "confirmed"
    max_reconnect_attempts: int = 10
    reconnect_delay_s: float = 5.0
    reconnect_backoff: str = "fixed"  # "fixed" | "exponential"
    health_check_interval_s: float = 30.0
    poll_interval_s: float = 2.0
    signature_page_size: int = 1000
    rpc_timeout_s: int = 20
    rpc_max_retries: int = 3
    environment: str = "production"

    def with_overrides(self, **overrides: Any) -> "IndexerConfig":
        """Return a copy with non-None overrides applied (CLI options)."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(clean)) if clean else self


def _coerce(values: Mapping[str, Any]) -> Dict[str, Any]:
    types = {f.name: f.type for f in fields(IndexerConfig)}
    out: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in types:
            continue
        kind = str(types[key])
        if value is None:
            out[key] = None
        elif kind == "int":
            out[key] = int(value)
        elif kind == "float":
            out[key] = float(value)
        else:
            out[key] = str(value)
    return out


def validate_config(config: IndexerConfig) -> IndexerConfig:
    if config.max_reconnect_attempts < 0:
        raise ValueError("max_reconnect_attempts must be >= 0")
    if config.reconnect_delay_s < 0:
        raise ValueError("reconnect_delay_s must be >= 0")
    if config.reconnect_backoff not in ("fixed", "exponential"):
        raise ValueError("reconnect_backoff must be 'fixed' or 'exponential'")
    if config.health_check_interval_s <= 0:
        raise ValueError("health_check_interval_s must be > 0")
    if config.signature_page_size < 1 or config.signature_page_size > 1000:
        raise ValueError("signature_page_size must be between 1 and 1000")
    return config


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> IndexerConfig:
    """
    Build the indexer configuration.

    Precedence: YAML file < environment variables. A missing file at the
    default path is fine; an explicit path that does not exist is an error.
    """
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}

    config_path = path or env.get("CAPTABLE_CONFIG") or DEFAULT_CONFIG_PATH
    p = Path(config_path)
    if p.exists():
        with open(p, "r", encoding="utf-8") as f:
            data.update(yaml.safe_load(f) or {})
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {path}")

    for env_key, field_name in _ENV_KEYS.items():
        value = env.get(env_key)
        if value is not None and str(value).strip():
            data[field_name] = value

    return validate_config(IndexerConfig(**_coerce(data)))
