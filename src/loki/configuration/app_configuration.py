from __future__ import annotations
import os
from pathlib import Path
import fcntl
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import yaml

from loki.util.logger import get_logger

logger = get_logger("app_configuration")


CONFIG_PATH = Path(os.getenv("LOKI_CONFIG_PATH", "./config/app_config.yml")).resolve()
STATE_PATH_ENV = "LOKI_STATE_PATH"
DEFAULT_STATE_PATH = "./data/state.db"


class AppConfig:
    """File-lock based accessor around the YAML application configuration.

    The class caches the contents of the config file and exposes typed
    shortcuts for the values the runtime needs. Uses fcntl file locks for
    safe concurrent access across processes.
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self._data: Dict[str, Any] = {}
        self.reload()

    # --------------------------
    # Private helpers
    # --------------------------
    def load_from_disk(self) -> Dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                data = yaml.safe_load(f)
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except FileNotFoundError:
            logger.error("[APP CONFIGURATION] Config file %s not found.", self.config_path)
            return {}
        except Exception as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
            return {}

        if not isinstance(data, dict):
            if data is not None:
                logger.error("[APP CONFIGURATION] Config %s is not a mapping; ignoring it.", self.config_path)
            return {}
        return data

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Reload configuration from disk and return the loaded mapping.

        Returns an empty dict when the file is missing or unreadable.
        """
        self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        """Return the cached configuration mapping. Callers must not mutate it."""
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Safe lookup for top-level configuration keys."""
        return self._data.get(key, default)

    # --------------------------
    # High-level shortcuts
    # --------------------------
    @property
    def manager_id(self) -> int | None:
        """The user allowed to run privileged management operations."""
        value = self._data.get("manager_id")
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.error("[APP CONFIGURATION] manager_id %r is not a snowflake", value)
            return None

    @property
    def state_path(self) -> Path:
        """Location of the persisted feature state.

        ``LOKI_STATE_PATH`` takes precedence over the ``state_path`` key.
        """
        env_value = os.getenv(STATE_PATH_ENV)
        if env_value:
            return Path(env_value).resolve()
        return Path(str(self._data.get("state_path") or DEFAULT_STATE_PATH)).resolve()

    @property
    def timezone(self) -> ZoneInfo:
        """Timezone used for calendar decisions such as April Fool's day."""
        name = str(self._data.get("timezone") or "UTC")
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.error("[APP CONFIGURATION] Unknown timezone %r, falling back to UTC", name)
            return ZoneInfo("UTC")

    @property
    def retry_attempts(self) -> int:
        """Attempts made for scheduler-initiated platform calls. Default 3."""
        retry = self._data.get("retry", {})
        if isinstance(retry, dict):
            return max(1, int(retry.get("attempts", 3)))
        return 3

    @property
    def retry_initial_delay(self) -> float:
        """First backoff delay in seconds for platform retries. Default 2."""
        retry = self._data.get("retry", {})
        if isinstance(retry, dict):
            return max(0.0, float(retry.get("initial_delay_seconds", 2.0)))
        return 2.0


# Shared application-wide configuration instance
app_config = AppConfig(CONFIG_PATH)
