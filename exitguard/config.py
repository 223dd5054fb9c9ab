"""Application configuration — environment variables, defaults and risk thresholds.

Process-level knobs (paths, loop periods, fees) live on ``Settings``.
Exit thresholds live in a nested JSON document, ``user_config/risk_config.json``,
wrapped by ``RiskConfig`` so every rule sees the same normalized view.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from decimal import Decimal
from pathlib import Path
from typing import Any

from exitguard.errors import ConfigError


class Settings:
    """Central configuration pulled from environment with safe defaults."""

    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_DIR: Path = Path(os.getenv("EXITGUARD_DATA_DIR", str(BASE_DIR / "data")))
    LOGS_DIR: Path = Path(os.getenv("EXITGUARD_LOGS_DIR", str(BASE_DIR / "logs")))
    USER_CONFIG_DIR: Path = Path(__file__).resolve().parent / "user_config"

    # Database
    DB_PATH: Path = Path(os.getenv("EXITGUARD_DB_PATH", str(DATA_DIR / "exitguard.duckdb")))

    LOG_LEVEL: str = os.getenv("EXITGUARD_LOG_LEVEL", "INFO")

    # ── Monitor loop ───────────────────────────────────────────────
    MONITOR_INTERVAL_SECONDS: float = float(os.getenv("MONITOR_INTERVAL_SECONDS", "5"))
    WATCHDOG_INTERVAL_SECONDS: float = float(os.getenv("WATCHDOG_INTERVAL_SECONDS", "10"))
    STOP_JOIN_TIMEOUT_SECONDS: float = float(os.getenv("STOP_JOIN_TIMEOUT_SECONDS", "2"))

    # ── PnL cache ──────────────────────────────────────────────────
    PNL_FRESHNESS_SECONDS: float = float(os.getenv("PNL_FRESHNESS_SECONDS", "10"))
    PNL_CACHE_TTL_SECONDS: float = float(os.getenv("PNL_CACHE_TTL_SECONDS", str(6 * 60 * 60)))
    ORPHAN_SWEEP_SECONDS: float = float(os.getenv("ORPHAN_SWEEP_SECONDS", "60"))
    PNL_PERSIST_SECONDS: float = float(os.getenv("PNL_PERSIST_SECONDS", "60"))

    # Brokerage charged per executed order, in rupees
    FEE_PER_ORDER: Decimal = Decimal(os.getenv("FEE_PER_ORDER", "20"))

    # Feature flags
    PAPER_TRADING: bool = os.getenv("PAPER_TRADING", "true").lower() == "true"

    RISK_CONFIG_PATH: Path = USER_CONFIG_DIR / "risk_config.json"

    def __init__(self) -> None:
        """Ensure runtime directories exist."""
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)
        self.LOGS_DIR.mkdir(parents=True, exist_ok=True)

    def load_risk_config(self, path: Path | None = None) -> RiskConfig:
        """Read the risk document from disk (missing file → defaults only)."""
        target = path or self.RISK_CONFIG_PATH
        if not target.exists():
            return RiskConfig({})
        try:
            data = json.loads(target.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise ConfigError(f"Unreadable risk config {target}: {exc}") from exc
        return RiskConfig(data)


# Aliases kept in sync after loading: canonical key → legacy key
_ALIASES = {
    "stop_loss_pct": "sl_pct",
    "take_profit_pct": "tp_pct",
}


class RiskConfig:
    """Read-only view over the nested risk document.

    ``position_sizing`` is the legacy home of the exit thresholds; its keys are
    merged under ``risk`` and ``risk`` wins on conflicts.  Every other top-level
    section (``profit_floor``, ``hard_rupee_sl``, ``feature_flags`` …) is
    reachable through ``section()`` or ``dig()``.
    """

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ConfigError(f"Risk config must be a mapping, got {type(data).__name__}")

        legacy = data.get("position_sizing") or {}
        risk = data.get("risk") or {}
        if not isinstance(legacy, Mapping) or not isinstance(risk, Mapping):
            raise ConfigError("'risk' and 'position_sizing' must be mappings")

        merged: dict[str, Any] = {**legacy, **risk}
        for canonical, legacy_key in _ALIASES.items():
            value = merged.get(canonical)
            if value is None:
                value = merged.get(legacy_key)
            if value is not None:
                merged[canonical] = value
                merged[legacy_key] = value

        self._raw: dict[str, Any] = dict(data)
        self._risk = merged

    @property
    def risk(self) -> dict[str, Any]:
        """Flat exit-threshold map handed to every rule context."""
        return self._risk

    def section(self, name: str) -> dict[str, Any]:
        """A nested section, looked up under ``risk`` first, then at top level."""
        value = self._risk.get(name)
        if value is None:
            value = self._raw.get(name)
        return dict(value) if isinstance(value, Mapping) else {}

    def feature(self, name: str) -> bool:
        return self.section("feature_flags").get(name) is True

    def dig(self, *path: str, default: Any = None) -> Any:
        node: Any = self._raw
        for key in path:
            if not isinstance(node, Mapping) or key not in node:
                return default
            node = node[key]
        return node

    def to_dict(self) -> dict[str, Any]:
        return {**self._raw, "risk": dict(self._risk)}


settings = Settings()
