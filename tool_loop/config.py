"""Settings for tool-loop.

Values come from (highest first) ``TOOL_LOOP_*`` environment variables, a
``.env`` file, then a YAML config file: ``./config.yaml`` when present,
otherwise ``~/.tool-loop/config.yaml``. Nested keys use ``__`` in env names,
e.g. ``TOOL_LOOP_AGENT_MODE__MAX_TOOL_CALLS=10``.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

DEFAULT_CONFIG_PATH = Path("~/.tool-loop/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Which model answers, and how to reach it."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""


class AgentModeConfig(BaseModel):
    """Tool loop limits.

    ``max_tool_calls`` bounds how many commands may run in one task before the
    loop stops with ``limit_reached``. ``timeout_ms`` bounds a single command.
    ``enabled_tools`` restricts which registered tools the model may call;
    ``None`` leaves every registered tool enabled.
    """

    enabled: bool = True
    max_tool_calls: int = 5
    timeout_ms: int = 30000
    enabled_tools: list[str] | None = None

    @field_validator("max_tool_calls")
    @classmethod
    def _non_negative_limit(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_tool_calls must be non-negative")
        return value

    @field_validator("timeout_ms")
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeout_ms must be positive")
        return value


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # or "json"


class Config(BaseSettings):
    model: ModelConfig = Field(default_factory=ModelConfig)
    agent_mode: AgentModeConfig = Field(default_factory=AgentModeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TOOL_LOOP_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML data arrives as init kwargs; the environment beats it.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """``./config.yaml`` if it exists, else the per-user file."""
        candidate = Path.cwd() / LOCAL_CONFIG_FILENAME
        return candidate if candidate.exists() else DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Build a config from a YAML file; a missing file yields defaults."""
        source = Path(path).expanduser() if path else cls.resolve_default_config_path()
        data: dict[str, Any] = {}
        if source.exists():
            data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Write the config as YAML, creating parent directories."""
        target = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        payload = yaml.safe_dump(self.model_dump(exclude_none=True), default_flow_style=False, sort_keys=False)
        target.write_text(payload, encoding="utf-8")


_active: Config | None = None


def get_config() -> Config:
    """Process-wide config, loaded on first use."""
    global _active
    if _active is None:
        _active = Config.load()
    return _active


def set_config(config: Config) -> None:
    global _active
    _active = config
