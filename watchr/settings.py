"""
Runtime-changeable settings, persisted as a single JSON object.
"""

import asyncio
import json
import math
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Any, Dict, Optional
import structlog

from .config import MIN_PRICECHECK_INTERVAL_MS

logger = structlog.get_logger()


@dataclass(frozen=True)
class Settings:
    stop_loss_pct_default: float = -0.8
    take_profit_pct: Optional[float] = None  # None = disabled
    pricecheck_interval_ms: int = 15000

    @property
    def take_profit_enabled(self) -> bool:
        return self.take_profit_pct is not None and self.take_profit_pct > 0


def _clean_take_profit(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or value <= 0:
        return None
    return value


class SettingsStore:
    """
    JSON-file backed Settings.

    Defaults are merged under whatever partial object is on disk, so a file
    written by an older version (or edited by hand) still loads.
    """

    def __init__(self, path: str = "settings.json", defaults: Optional[Settings] = None):
        self.path = Path(path)
        self.defaults = defaults or Settings()
        self._cache: Optional[Settings] = None
        self._lock = asyncio.Lock()

    def _read(self) -> Settings:
        data: Dict[str, Any] = {}
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = loaded
            except (OSError, ValueError) as e:
                logger.warning("settings_load_failed", path=str(self.path), error=str(e))

        merged = asdict(self.defaults)
        merged.update({k: v for k, v in data.items() if k in merged})
        try:
            return Settings(
                stop_loss_pct_default=float(merged["stop_loss_pct_default"]),
                take_profit_pct=_clean_take_profit(merged["take_profit_pct"]),
                pricecheck_interval_ms=int(merged["pricecheck_interval_ms"]),
            )
        except (TypeError, ValueError) as e:
            logger.warning("settings_invalid", path=str(self.path), error=str(e))
            return self.defaults

    def _write(self, settings: Settings) -> None:
        with open(self.path, 'w') as f:
            json.dump(asdict(settings), f, indent=2)

    async def get(self) -> Settings:
        async with self._lock:
            if self._cache is None:
                self._cache = self._read()
            return self._cache

    async def update(self, **changes: Any) -> Settings:
        """
        Apply and persist a partial update.

        Raises:
            ValueError: unknown field or out-of-range value
        """
        unknown = set(changes) - set(asdict(self.defaults))
        if unknown:
            raise ValueError(f"unknown settings: {', '.join(sorted(unknown))}")

        if "stop_loss_pct_default" in changes:
            stop_loss = float(changes["stop_loss_pct_default"])
            if not stop_loss < 0:
                raise ValueError("stop loss must be negative")
            changes["stop_loss_pct_default"] = stop_loss
        if "take_profit_pct" in changes:
            changes["take_profit_pct"] = _clean_take_profit(changes["take_profit_pct"])
        if "pricecheck_interval_ms" in changes:
            interval = int(changes["pricecheck_interval_ms"])
            if interval < MIN_PRICECHECK_INTERVAL_MS:
                raise ValueError(f"interval must be >= {MIN_PRICECHECK_INTERVAL_MS} ms")
            changes["pricecheck_interval_ms"] = interval

        async with self._lock:
            current = self._cache if self._cache is not None else self._read()
            updated = replace(current, **changes)
            self._write(updated)
            self._cache = updated

        logger.info("settings_updated", **{k: v for k, v in changes.items()})
        return updated
