"""ServerForge — Configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. System config: /etc/serverforge/config.yaml
    3. User config:   ~/.serverforge/config.yaml
    4. An explicit ``--config`` file
    5. Environment variables prefixed with SERVERFORGE_ (``__`` nests keys,
       e.g. ``SERVERFORGE_ENGINE__FAILURE_POLICY=abort-only``)

All settings are immutable after load.  Call ``Settings.load()`` once at
CLI startup and pass the instance to the engine.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

import pydantic
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from serverforge.exceptions import ConfigError

DEFAULT_SSH_PORT = 2222

FailurePolicy = Literal["auto", "auto-rollback", "abort-only"]
RollbackPolicy = Literal["best-effort", "strict"]


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class ConcurrencyConfig(BaseModel):
    enabled: bool = Field(
        default=False,
        description=(
            "Run modules with no dependency relationship concurrently. "
            "Modules sharing a resource (package manager, firewall) still serialise."
        ),
    )
    max_workers: Annotated[int, Field(ge=1, le=32)] = 4


class EngineConfig(BaseModel):
    state_dir: Path = Path("/var/lib/serverforge")
    failure_policy: FailurePolicy = Field(
        default="auto",
        description=(
            "'auto' resolves to 'abort-only' for interactive runs and "
            "'auto-rollback' for unattended runs."
        ),
    )
    rollback_policy: RollbackPolicy = "best-effort"
    operation_timeout_seconds: Annotated[float, Field(gt=0, le=86_400)] = Field(
        default=1800.0,
        description="Timeout applied to each module operation (install, verify, rollback...).",
    )
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)

    @field_validator("state_dir", mode="before")
    @classmethod
    def expand_state_dir(cls, v: object) -> object:
        if isinstance(v, (str, Path)):
            return Path(v).expanduser()
        return v


class ModuleConfig(BaseModel):
    enabled: list[str] = Field(
        default_factory=list,
        description="Module names installed when no --modules list is given. Empty = all.",
    )
    disabled: list[str] = Field(
        default_factory=list,
        description="Explicitly disabled modules (overrides 'enabled').",
    )
    capability_defaults: dict[str, str] = Field(
        default_factory=dict,
        description="Capability tag -> module name used when several modules provide it.",
    )
    settings: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Per-module configuration blocks, keyed by module name.",
    )

    @model_validator(mode="after")
    def firewall_follows_ssh_port(self) -> ModuleConfig:
        # The port ufw opens for SSH must be the one sshd listens on.
        ssh_port = self.settings.get("security/ssh", {}).get("port", DEFAULT_SSH_PORT)
        firewall = self.settings.setdefault("security/firewall", {})
        if not firewall.get("allow_ssh", True):
            return self
        if "ssh_port" not in firewall:
            firewall["ssh_port"] = ssh_port
        elif str(firewall["ssh_port"]) != str(ssh_port):
            raise ValueError(
                f"security/firewall ssh_port {firewall['ssh_port']} does not match "
                f"security/ssh port {ssh_port}; enabling the firewall would lock out SSH"
            )
        return self


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["console", "json"] = "console"
    log_file: str | None = None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SERVERFORGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    modules: ModuleConfig = Field(default_factory=ModuleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        # Environment variables win over values read from YAML files.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from YAML files + environment variables.

        Raises:
            ConfigError: A config file is unreadable, not YAML, or fails validation.
        """
        data: dict[str, Any] = {}

        candidates = [
            Path("/etc/serverforge/config.yaml"),
            Path.home() / ".serverforge" / "config.yaml",
        ]
        if config_file:
            if not config_file.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            candidates.append(config_file)

        for path in candidates:
            if path.exists():
                try:
                    with path.open() as f:
                        loaded = yaml.safe_load(f) or {}
                except (OSError, yaml.YAMLError) as exc:
                    raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
                if not isinstance(loaded, dict):
                    raise ConfigError(f"Config file {path} must contain a mapping")
                _deep_merge(data, loaded)

        try:
            return cls(**data)
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(p) for p in first["loc"])
            raise ConfigError(first["msg"], field=field) from exc

    def active_modules(self) -> list[str]:
        """Return the effective list of enabled module names."""
        return [m for m in self.modules.enabled if m not in self.modules.disabled]

    def module_settings(self, name: str) -> dict[str, Any]:
        return dict(self.modules.settings.get(name, {}))

    @property
    def state_file(self) -> Path:
        return self.engine.state_dir / "state.db"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


# Module-level singleton, replaced by ``Settings.load()`` at CLI startup.
_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def override_settings(settings: Settings | None) -> None:
    """Replace the module-level singleton. Used by the CLI and in tests."""
    global _settings
    _settings = settings
