from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from ai_agents.services.errors import ConfigError
from ai_agents.services.models import AppConfig

logger = logging.getLogger(__name__)


class AppConfigService:
    """Loads and saves the role/phase/format configuration kept in a JSON file."""

    def __init__(self, config_path: Union[str, Path]) -> None:
        self._path = Path(config_path)

    @property
    def path(self) -> Path:
        return self._path

    def load_config(self) -> AppConfig:
        path = self._path.resolve()
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"failed to read app config file {path}: {exc}", details={"path": str(path)}) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"failed to parse app config from {path}: {exc}", details={"path": str(path)}) from exc
        if not isinstance(data, dict):
            raise ConfigError(f"app config in {path} must be a JSON object", details={"path": str(path)})
        logger.debug("Loaded app config from %s", path)
        return AppConfig.from_dict(data)

    def save_config(self, config: AppConfig) -> None:
        path = self._path.resolve()
        payload = json.dumps(config.to_dict(), ensure_ascii=False, indent=2)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".app_config.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except OSError as exc:
            raise ConfigError(f"failed to write app config to file {path}: {exc}", details={"path": str(path)}) from exc
        logger.info("Saved app config to %s", path)
