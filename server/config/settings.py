import os
from dataclasses import asdict, dataclass, fields
from typing import Dict


@dataclass
class BaseConfig:
    DEBUG: bool = False
    TESTING: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"

    APP_CONFIG_PATH: str = "storage/config/app_config.json"

    AI_PROVIDER: str = "openai"  # openai | gemini
    AI_DEFAULT_MODEL: str = "o4-mini"
    AI_ASSISTANT_NAME: str = "Refinement Assistant"
    AI_HTTP_TIMEOUT: int = 60
    AI_POLL_INTERVAL: float = 1.0
    AI_POLL_MAX_INTERVAL: float = 5.0
    AI_RUN_TIMEOUT: float = 300.0


@dataclass
class DevelopmentConfig(BaseConfig):
    DEBUG: bool = True
    LOG_LEVEL: str = "DEBUG"


@dataclass
class TestingConfig(BaseConfig):
    TESTING: bool = True
    AI_RUN_TIMEOUT: float = 5.0


CONFIG_MAP = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": BaseConfig
}


def load_config(name: str) -> Dict[str, object]:
    """Settings for ``name``, with any same-named environment variable taking precedence."""
    config_class = CONFIG_MAP.get(name, BaseConfig)
    config = config_class()
    for item in fields(config):
        raw = os.getenv(item.name)
        if raw is None:
            continue
        setattr(config, item.name, _coerce(raw, getattr(config, item.name)))
    return asdict(config)


def _coerce(raw: str, current: object) -> object:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw
