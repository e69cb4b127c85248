from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bulkpick.data.repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    db_path: Path
    api_base_url: str = "http://localhost:4400/api"
    api_timeout_seconds: float = 15.0
    user_id: str | None = None
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"


def default_db_path() -> Path:
    # Workstation-local database (config overrides + audit log only).
    return Path("db") / "bulkpick.db"


@dataclass(frozen=True)
class EngineConfig:
    """Tunables of the pick coordination engine.

    Defaults reproduce the behaviour of the legacy terminal. Any of them can be
    overridden per workstation through the `app_config` table using the field
    name as key.
    """

    switch_threshold: int = 3
    epsilon: float = 0.001
    completion_debounce_seconds: float = 1.0
    completion_settle_seconds: float = 0.1
    stale_data_cooldown_seconds: float = 2.0
    # Automatic re-fetches of lagging pallet data before waiting for a manual refresh.
    stale_refetch_limit: int = 5
    manual_override_seconds: float = 600.0
    auto_switch_enabled: bool = True

    @classmethod
    def from_repo(cls, repo: Repository) -> EngineConfig:
        values: dict[str, object] = {}
        for f in fields(cls):
            raw = repo.get_config(key=f.name, default=None)
            if raw is None or str(raw).strip() == "":
                continue
            default = getattr(cls, f.name)
            try:
                values[f.name] = _coerce(str(raw).strip(), type(default))
            except ValueError:
                logger.warning("Ignoring invalid config %s=%r (default %r)", f.name, raw, default)
        config = cls(**values)
        if config.switch_threshold < 1:
            logger.warning("switch_threshold=%s is below 1, using 1", config.switch_threshold)
            config = cls(**{**values, "switch_threshold": 1})
        return config


def _coerce(raw: str, target: type) -> object:
    if target is bool:
        lowered = raw.lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if target is int:
        return int(float(raw))
    if target is float:
        return float(raw)
    return raw
