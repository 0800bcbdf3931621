"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class StorageConfig(BaseModel):
    """Storage backend configuration."""
    backend: Literal["memory", "file"] = "file"
    data_dir: Path = Field(default=Path(".decision-engine"))
    lock_timeout: float = 10.0  # Seconds to wait for a history lock


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    use_file: bool = False
    use_json: bool = False
    log_dir: Path = Field(default=Path("logs"))

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"level must be a standard logging level, got '{v}'")
        return upper


class ResolverConfig(BaseModel):
    """Graph building and path resolution settings."""
    # Reject trees whose conditions use types the registry does not know.
    # When false they only warn and evaluate as false at run time.
    strict_condition_types: bool = False
    max_fallback_depth: int = 16

    @field_validator("max_fallback_depth")
    @classmethod
    def validate_depth(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_fallback_depth must be >= 1, got {v}")
        return v


class EngineConfig(BaseSettings):
    """Main engine configuration."""
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)

    model_config = SettingsConfigDict(
        env_prefix="DECISION_ENGINE_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="allow",
    )


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> EngineConfig:
    """Internal loader for engine config (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    return EngineConfig(**data)


def load_config(config_path: Path = Path("decision-engine.yaml")) -> EngineConfig:
    """Load engine configuration from YAML file.

    Uses mtime-based caching: returns the cached config if the file hasn't changed.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration."
        )
        return EngineConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else EngineConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def create_store(config: EngineConfig):
    """Build the storage backend named by the config."""
    from ..storage.file_store import FileStore
    from ..storage.memory import InMemoryStore

    if config.storage.backend == "memory":
        return InMemoryStore()
    return FileStore(config.storage.data_dir, lock_timeout=config.storage.lock_timeout)


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand environment variables in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "storage.data_dir")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used."
            )
            return data
        return value
    return data
