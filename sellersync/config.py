from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
import os
import yaml


@dataclass(frozen=True)
class Settings:
    # API
    base_url: str | None = None
    api_token: str | None = None
    timeout_seconds: float = 20.0
    retries: int = 3
    retry_backoff_seconds: float = 0.5
    tls_skip_verify: bool = False
    ca_file: str | None = None

    # Logging
    log_dir: str = "./logs"
    log_level: str = "INFO"

    # Freshness
    unread_refresh_seconds: float = 30.0
    notifications_stale_seconds: float = 30.0
    transactions_stale_seconds: float = 120.0
    transaction_detail_stale_seconds: float = 300.0

    # Paging
    notifications_page_limit: int = 50
    transactions_page_limit: int = 20
    scan_page_size: int = 100
    scan_max_pages: int = 10
    remember_direct_lookup_support: bool = False


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    sources_used: list[str]


ENV_VARS = {
    "base_url": "SELLERSYNC_BASE_URL",
    "api_token": "SELLERSYNC_API_TOKEN",
    "timeout_seconds": "SELLERSYNC_TIMEOUT_SECONDS",
    "retries": "SELLERSYNC_RETRIES",
    "retry_backoff_seconds": "SELLERSYNC_RETRY_BACKOFF_SECONDS",
    "tls_skip_verify": "SELLERSYNC_TLS_SKIP_VERIFY",
    "ca_file": "SELLERSYNC_CA_FILE",
    "log_dir": "SELLERSYNC_LOG_DIR",
    "log_level": "SELLERSYNC_LOG_LEVEL",
    "unread_refresh_seconds": "SELLERSYNC_UNREAD_REFRESH_SECONDS",
}


def _read_yaml_config(path: Path) -> dict:
    if not path.exists():
        return {}
    if not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data


def _env_get(name: str) -> str | None:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


def parse_bool(v: str | None) -> bool | None:
    if v is None:
        return None
    vv = v.lower()
    if vv in ("1", "true", "yes", "y"):
        return True
    if vv in ("0", "false", "no", "n"):
        return False
    raise ValueError(f"Invalid boolean env value: {v}")


def _coerce(name: str, value):
    """Приведение значения из env/config к типу поля Settings."""
    if value is None:
        return None
    default = getattr(Settings(), name)
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return parse_bool(str(value))
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def load_settings(
    config_path: str | None,
    cli_overrides: dict,
) -> LoadedSettings:
    """
    Priority: CLI > ENV > config > defaults
    """
    sources: list[str] = []
    known = {f.name for f in fields(Settings)}

    # 1) config file
    cfg: dict = {}
    if config_path:
        cfg = _read_yaml_config(Path(config_path))
        if cfg:
            sources.append("config")

    # 2) env
    env = {name: _env_get(var) for name, var in ENV_VARS.items()}
    if any(v is not None for v in env.values()):
        sources.append("env")

    # merge defaults -> config -> env -> cli
    merged = {f.name: getattr(Settings(), f.name) for f in fields(Settings)}
    for k, v in cfg.items():
        if k in known:
            merged[k] = _coerce(k, v)

    for k, v in env.items():
        if v is not None:
            merged[k] = _coerce(k, v)

    # 3) apply CLI overrides (only those explicitly passed)
    if any(v is not None for v in cli_overrides.values()):
        sources.append("cli")

    for k, v in cli_overrides.items():
        if v is None:
            continue
        if k not in known:
            raise ValueError(f"Unknown setting: {k}")
        merged[k] = v

    return LoadedSettings(settings=Settings(**merged), sources_used=sources)
