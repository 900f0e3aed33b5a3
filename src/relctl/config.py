"""Configuration management for relctl using Pydantic."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relctl.core.exceptions import ConfigError
from relctl.core.logging import LogLevel
from relctl.core.output import OutputFormat


class TierPolicyConfig(BaseModel):
    """Rollout policy defaults for one environment tier."""

    requires_manual_gate: bool = False
    rollback_on_failure: bool = True
    approval_timeout: int = 3600  # seconds

    # Health checks
    warmup_seconds: float = 0.0
    bake_seconds: float = 0.0
    interval: float = 5.0
    timeout: float = 300.0
    threshold: int = Field(default=1, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    probe_timeout: float = 5.0

    # Transient transport errors
    max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0


def _default_tiers() -> dict[str, TierPolicyConfig]:
    return {
        "development": TierPolicyConfig(),
        "staging": TierPolicyConfig(threshold=2),
        "production": TierPolicyConfig(
            requires_manual_gate=True,
            threshold=3,
            bake_seconds=60.0,
        ),
    }


class PolicyConfig(BaseModel):
    """Rollout policy engine configuration."""

    default_tier: str = "development"
    tiers: dict[str, TierPolicyConfig] = Field(default_factory=_default_tiers)
    escalate_after_failures: int = Field(default=2, ge=1)
    non_atomic_min_threshold: int = Field(default=2, ge=1)

    def get_tier(self, tier: str | None) -> TierPolicyConfig:
        """Get policy defaults for a tier, falling back to the default tier."""
        name = tier or self.default_tier
        if name in self.tiers:
            return self.tiers[name]
        if self.default_tier in self.tiers:
            return self.tiers[self.default_tier]
        return TierPolicyConfig()


class SlotTargetConfig(BaseModel):
    """Slot-based PaaS host configuration."""

    base_url: str
    site: str
    staging_slot: str = "staging"
    live_slot: str = "production"
    token: str | None = None
    timeout: int = 30

    def get_token(self) -> str | None:
        """Get API token from config or environment."""
        token = self.token
        if token == "from_env" or token is None:
            token = os.environ.get("RELCTL_SLOT_TOKEN")
        return token


class RemoteTargetConfig(BaseModel):
    """Remote-machine web-server host configuration."""

    root: str  # mounted share on the remote machine
    site_path: str | None = None  # copy-over mode when set
    stop_command: str | None = None
    start_command: str | None = None
    command_timeout: int = 120


class TargetConfig(BaseModel):
    """Deployment target descriptor."""

    kind: Literal["slot", "remote"]
    tier: str | None = None
    description: str = ""
    health_url: str | None = None
    slot: SlotTargetConfig | None = None
    remote: RemoteTargetConfig | None = None

    @model_validator(mode="after")
    def validate_kind_settings(self) -> "TargetConfig":
        if self.kind == "slot" and self.slot is None:
            raise ValueError("slot targets require a 'slot' section")
        if self.kind == "remote" and self.remote is None:
            raise ValueError("remote targets require a 'remote' section")
        return self


class RetentionConfig(BaseModel):
    """Artifact retention configuration."""

    keep_last_n: int = Field(default=5, ge=0)
    keep_min_age_days: float = Field(default=7.0, ge=0)


class ApprovalConfig(BaseModel):
    """Manual approval gate configuration."""

    poll_interval: float = 5.0  # timeout is per tier, see TierPolicyConfig


class WebhookConfig(BaseModel):
    """Outbound webhook for release transitions."""

    url: str
    events: list[str] = Field(default_factory=lambda: ["*"])
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 10.0
    retry_count: int = Field(default=3, ge=0)


class NotificationConfig(BaseModel):
    """Notification sinks."""

    webhooks: list[WebhookConfig] = Field(default_factory=list)
    drain_timeout: float | None = Field(default=60.0, gt=0)  # seconds to flush on shutdown


class GlobalConfig(BaseModel):
    """Global settings."""

    state_dir: str = ".relctl/state"
    artifact_dir: str = ".relctl/artifacts"
    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.INFO
    max_concurrent_targets: int = Field(default=4, ge=1)

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class RelCtlConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    targets: dict[str, TargetConfig] = Field(default_factory=dict)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    def get_target(self, name: str) -> TargetConfig:
        """Get a target descriptor by name."""
        if name not in self.targets:
            raise ConfigError(f"Target '{name}' not found")
        return self.targets[name]


class RelCtlSettings(BaseSettings):
    """Environment overrides (RELCTL_*)."""

    model_config = SettingsConfigDict(env_prefix="RELCTL_", extra="ignore")

    config: str | None = None
    state_dir: str | None = None
    artifact_dir: str | None = None


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["relctl.yaml", "relctl.yml", ".relctl.yaml", ".relctl.yml"]

    def __init__(self):
        self._config: RelCtlConfig | None = None

    def load(
        self,
        config_file: str | Path | None = None,
        settings: RelCtlSettings | None = None,
    ) -> RelCtlConfig:
        """Load configuration from files and environment.

        Priority (highest to lowest):
        1. RELCTL_* environment overrides
        2. Explicitly specified config file (or RELCTL_CONFIG)
        3. Project config (./relctl.yaml)
        4. User config (~/.relctl/config.yaml)

        Args:
            config_file: Optional explicit config file path
            settings: Environment settings, read from os.environ when omitted

        Returns:
            Merged configuration
        """
        settings = settings or RelCtlSettings()
        configs: list[dict[str, Any]] = []

        user_config_path = Path.home() / ".relctl" / "config.yaml"
        if user_config_path.exists():
            configs.append(self._load_yaml_file(user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        explicit = config_file or settings.config
        if explicit:
            config_path = Path(explicit)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {explicit}")
            configs.append(self._load_yaml_file(config_path))

        overrides: dict[str, Any] = {}
        if settings.state_dir:
            overrides["state_dir"] = settings.state_dir
        if settings.artifact_dir:
            overrides["artifact_dir"] = settings.artifact_dir
        if overrides:
            configs.append({"global": overrides})

        merged = self._merge_configs(configs)

        try:
            self._config = RelCtlConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")
        return self._config

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
                return content
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

    def _merge_configs(self, configs: list[dict[str, Any]]) -> dict[str, Any]:
        """Deep merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = self._deep_merge(result, config)
        return result

    def _deep_merge(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result


def get_default_config() -> RelCtlConfig:
    """Get default configuration without loading from files."""
    return RelCtlConfig()
