"""Feature flags gating the scheduler and write-back subsystems.

Flags resolve in order: persisted local override, configured override,
static default. Unknown flags are off.
"""
from typing import Dict, Mapping, Optional
from pathlib import Path
import json
import threading

import structlog

from scheduling_intel.core.config import AppConstants, FeatureFlagSettings

logger = structlog.get_logger(__name__)

DEFAULT_FLAGS: Dict[str, bool] = {
    AppConstants.FLAG_SCHEDULER_ENABLED: True,
    AppConstants.FLAG_WRITEBACK_PHASE2: True,
}


class FlagOverrideStore:
    """In-memory override store"""

    def __init__(self, initial: Optional[Mapping[str, bool]] = None):
        self._values: Dict[str, bool] = dict(initial or {})

    def load(self) -> Dict[str, bool]:
        return dict(self._values)

    def set(self, flag: str, enabled: bool) -> None:
        self._values[flag] = enabled

    def clear(self, flag: str) -> None:
        self._values.pop(flag, None)


class JsonFileOverrideStore(FlagOverrideStore):
    """Override store persisted to a JSON file"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        super().__init__(self._read())

    def _read(self) -> Dict[str, bool]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable feature flag overrides", path=str(self.path), error=str(e))
            return {}
        return {k: v for k, v in raw.items() if isinstance(v, bool)}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._values, indent=2, sort_keys=True), encoding="utf-8")

    def set(self, flag: str, enabled: bool) -> None:
        with self._lock:
            super().set(flag, enabled)
            self._write()

    def clear(self, flag: str) -> None:
        with self._lock:
            super().clear(flag)
            self._write()


class FeatureFlags:
    """Resolved feature flag view passed into services at construction"""

    def __init__(
        self,
        defaults: Optional[Mapping[str, bool]] = None,
        overrides: Optional[Mapping[str, bool]] = None,
        store: Optional[FlagOverrideStore] = None
    ):
        self.defaults = dict(DEFAULT_FLAGS if defaults is None else defaults)
        self.overrides = dict(overrides or {})
        self.store = store or FlagOverrideStore()

    @classmethod
    def from_settings(cls, settings: FeatureFlagSettings) -> "FeatureFlags":
        store = (
            JsonFileOverrideStore(settings.OVERRIDE_FILE)
            if settings.OVERRIDE_FILE else FlagOverrideStore()
        )
        return cls(overrides=settings.OVERRIDES, store=store)

    def is_enabled(self, flag: str) -> bool:
        persisted = self.store.load()
        if flag in persisted:
            return persisted[flag]
        if flag in self.overrides:
            return self.overrides[flag]
        return self.defaults.get(flag, False)

    def set_override(self, flag: str, enabled: bool) -> None:
        self.store.set(flag, enabled)
        logger.info("Feature flag override set", flag=flag, enabled=enabled)

    def clear_override(self, flag: str) -> None:
        self.store.clear(flag)
        logger.info("Feature flag override cleared", flag=flag)

    def snapshot(self) -> Dict[str, bool]:
        names = set(self.defaults) | set(self.overrides) | set(self.store.load())
        return {name: self.is_enabled(name) for name in sorted(names)}

    @property
    def scheduler_enabled(self) -> bool:
        return self.is_enabled(AppConstants.FLAG_SCHEDULER_ENABLED)

    @property
    def writeback_enabled(self) -> bool:
        return self.is_enabled(AppConstants.FLAG_WRITEBACK_PHASE2)


__all__ = [
    "DEFAULT_FLAGS",
    "FlagOverrideStore",
    "JsonFileOverrideStore",
    "FeatureFlags"
]
