"""Cached view of one config file, backed by :class:`ConfigManager`."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from .config_manager import ConfigManager, get_config_manager
from .logging_utils import get_module_logger

logger = get_module_logger(__name__)


class ModulePreferences:
    """Lightweight wrapper around ConfigManager for the scanner's config."""

    def __init__(
        self,
        config_path: Path,
        *,
        config_manager: Optional[ConfigManager] = None,
        initial_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._config_path = Path(config_path)
        self._manager = config_manager or get_config_manager()
        self._cache: Dict[str, Any] = {}
        if initial_data is not None:
            self._cache = dict(initial_data)
        else:
            self.reload()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, config_path: Optional[Path] = None) -> "ModulePreferences":
        """Build preferences from in-memory values (embedding apps, tests)."""
        return cls(config_path or Path("config.txt"), initial_data=data)

    @property
    def config_path(self) -> Path:
        return self._config_path

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._cache)

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        return self._cache.get(key, default)

    def reload(self) -> Dict[str, Any]:
        self._cache = self._manager.read_config(self._config_path)
        logger.debug("Loaded %d preference values from %s", len(self._cache), self._config_path)
        return self.snapshot()

    async def reload_async(self) -> Dict[str, Any]:
        self._cache = await self._manager.read_config_async(self._config_path)
        return self.snapshot()

    async def write_async(self, updates: Dict[str, Any]) -> bool:
        if not updates:
            return True
        success = await self._manager.write_config_async(self._config_path, updates)
        if success:
            for key, value in updates.items():
                self._cache[key] = ConfigManager.stringify_value(value)
        return success


__all__ = ["ModulePreferences"]
