"""Configuration loading with pydantic-settings.

Sources, highest precedence first:
1. Direct kwargs
2. Environment variables (CODESCOUT__SECTION__KEY)
3. Workspace config (.codescout/config.yaml)
4. Global config (~/.config/codescout/config.yaml)
5. Built-in defaults
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from codescout.config.models import (
    CacheConfig,
    ChunkingConfig,
    CodeScoutConfig,
    DatabaseConfig,
    EmbeddingConfig,
    IndexConfig,
    IndexerConfig,
    LoggingConfig,
    SearchConfig,
)
from codescout.core.errors import ConfigurationError

GLOBAL_CONFIG_PATH = Path("~/.config/codescout/config.yaml").expanduser()
DATA_DIR_NAME = ".codescout"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError.parse_error(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigurationError.parse_error(str(path), "top level must be a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class _YamlSource(PydanticBaseSettingsSource):
    """Settings source that reads from pre-loaded YAML config."""

    def __init__(self, settings_cls: type[BaseSettings], yaml_config: dict[str, Any]) -> None:
        super().__init__(settings_cls)
        self._yaml_config = yaml_config

    def get_field_value(
        self,
        field: Any,  # noqa: ARG002
        field_name: str,
    ) -> tuple[Any, str, bool]:
        val = self._yaml_config.get(field_name)
        return val, field_name, val is not None

    def __call__(self) -> dict[str, Any]:
        return self._yaml_config


def _make_settings_class(yaml_config: dict[str, Any]) -> type[BaseSettings]:
    """Create a Settings class with instance-based YAML source (thread-safe)."""

    class CodeScoutSettings(BaseSettings):
        """Root config. Env vars: CODESCOUT__LOGGING__LEVEL, CODESCOUT__SEARCH__RERANK_RATIO, etc."""

        model_config = SettingsConfigDict(
            env_prefix="CODESCOUT__",
            env_nested_delimiter="__",
            case_sensitive=False,
        )

        logging: LoggingConfig = LoggingConfig()
        index: IndexConfig = IndexConfig()
        chunking: ChunkingConfig = ChunkingConfig()
        embedding: EmbeddingConfig = EmbeddingConfig()
        search: SearchConfig = SearchConfig()
        indexer: IndexerConfig = IndexerConfig()
        cache: CacheConfig = CacheConfig()
        database: DatabaseConfig = DatabaseConfig()

        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            # First wins: init kwargs > env vars > yaml files
            return (init_settings, env_settings, _YamlSource(settings_cls, yaml_config))

    return CodeScoutSettings


def load_config(workspace_root: Path | None = None, **kwargs: Any) -> CodeScoutConfig:
    """Load config: defaults < global yaml < workspace yaml < env vars < kwargs.

    Args:
        workspace_root: Workspace to load .codescout/config.yaml from.
                        Defaults to current working directory.
        **kwargs: Override values per section (highest precedence).

    Returns:
        Fully resolved configuration object.

    Raises:
        ConfigurationError: On invalid YAML syntax or validation errors.
    """
    workspace_root = workspace_root or Path.cwd()

    yaml_config = _load_yaml(GLOBAL_CONFIG_PATH)
    workspace_config = _load_yaml(workspace_root / DATA_DIR_NAME / "config.yaml")
    if workspace_config:
        yaml_config = _deep_merge(yaml_config, workspace_config)

    settings_cls = _make_settings_class(yaml_config)
    try:
        settings = settings_cls(**kwargs)
        return CodeScoutConfig.model_validate(settings.model_dump())
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(loc) for loc in err["loc"])
        raise ConfigurationError.invalid_value(field, err.get("input"), err["msg"]) from e


def get_index_dir(workspace_root: Path, config: CodeScoutConfig | None = None) -> Path:
    """Directory holding index.db, respecting config.index.index_path."""
    config = config or load_config(workspace_root)
    if config.index.index_path:
        return Path(config.index.index_path).expanduser()
    return workspace_root / DATA_DIR_NAME
