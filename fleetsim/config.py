"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Secure defaults (no API keys in code)
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from fleetsim.domain.profiles import ProfileCatalogName

# Load environment variables from .env file
load_dotenv()


class NarrativeConfig(BaseModel):
    """AI narrative provider configuration. Keys are optional: without one,
    incidents are recorded with the fallback narrative."""

    openai_api_key: str | None = Field(None, description="OpenAI API key")
    anthropic_api_key: str | None = Field(None, description="Anthropic API key (optional)")

    model_name: str = Field(
        default="openai:gpt-4o-mini", description="Model used for incident narratives"
    )
    temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    max_tokens: int = Field(default=1000, gt=100)
    max_retries: int = Field(default=2, ge=0)

    @field_validator("openai_api_key", "anthropic_api_key")
    def validate_api_keys(cls, v: str | None) -> str | None:
        if not v:
            return None
        if v == "your-openai-api-key-here":
            raise ValueError("AI provider API key is still the placeholder value")
        if not v.startswith("sk-"):
            raise ValueError("AI provider API key must start with 'sk-'")
        return v

    @property
    def enabled(self) -> bool:
        return bool(self.openai_api_key or self.anthropic_api_key)


class SimulationConfig(BaseModel):
    """Tick engine configuration."""

    fleet_size: int = Field(default=50, gt=0, description="Number of simulated servers")
    profile_catalog: ProfileCatalogName = Field(
        default="standard", description="Profile catalog used to assign server roles"
    )
    target_critical_ratio: float = Field(
        default=0.03, ge=0.0, le=1.0, description="Target fraction of Critical servers"
    )
    target_warning_ratio: float = Field(
        default=0.06, ge=0.0, le=1.0, description="Target fraction of Warning servers"
    )
    tick_interval_seconds: float = Field(
        default=600.0, gt=0.0, description="Wall-clock interval between ticks"
    )
    simulated_step_minutes: int = Field(
        default=10, gt=0, description="Simulated time advanced by one tick"
    )
    initial_batch_size: int = Field(
        default=10, gt=0, description="Servers created before the first notification"
    )
    growth_batch_size: int = Field(
        default=5, gt=0, description="Servers created per batch after the initial one"
    )
    new_alert_probability: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Chance of new alerts on an alert refresh"
    )
    seed: int | None = Field(default=None, description="Random seed for reproducible runs")

    @model_validator(mode="after")
    def ratios_fit_fleet(self) -> "SimulationConfig":
        if self.target_critical_ratio + self.target_warning_ratio > 1.0:
            raise ValueError("target_critical_ratio + target_warning_ratio must not exceed 1.0")
        return self


class DetectionConfig(BaseModel):
    """Incident detection configuration."""

    check_interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Interval between incident detection passes"
    )
    narrative_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Timeout for one narrative request"
    )
    circuit_failure_threshold: int = Field(
        default=5, gt=0, description="Consecutive narrative failures before skipping calls"
    )
    circuit_recovery_seconds: int = Field(
        default=60, gt=0, description="Time before a failed narrative provider is retried"
    )


class OverlayConfig(BaseModel):
    """Pre-baked dataset configuration."""

    server_count: int = Field(default=30, gt=0, description="Servers in the demo dataset")
    demo_refresh_interval_seconds: float = Field(
        default=15.0, gt=0.0, description="Interval between demo dataset refreshes"
    )
    seed: int | None = Field(default=None, description="Random seed for reproducible datasets")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    overlay: OverlayConfig = Field(default_factory=OverlayConfig)
    narrative: NarrativeConfig = Field(default_factory=NarrativeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _catalog_to_literal(val: str) -> ProfileCatalogName:
        return "kubernetes" if val.strip().lower() in {"k8s", "kubernetes"} else "standard"

    def _optional_int(val: str | None) -> int | None:
        if val is None or not val.strip():
            return None
        return int(val)

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    simulation_config = SimulationConfig(
        fleet_size=int(os.getenv("FLEET_SIZE", "50")),
        profile_catalog=_catalog_to_literal(os.getenv("PROFILE_CATALOG", "standard")),
        target_critical_ratio=float(os.getenv("TARGET_CRITICAL_RATIO", "0.03")),
        target_warning_ratio=float(os.getenv("TARGET_WARNING_RATIO", "0.06")),
        tick_interval_seconds=float(os.getenv("TICK_INTERVAL_SECONDS", "600.0")),
        simulated_step_minutes=int(os.getenv("SIMULATED_STEP_MINUTES", "10")),
        seed=_optional_int(os.getenv("SIMULATION_SEED")),
    )

    detection_config = DetectionConfig(
        check_interval_seconds=float(os.getenv("DETECTION_INTERVAL_SECONDS", "60.0")),
        narrative_timeout_seconds=float(os.getenv("NARRATIVE_TIMEOUT_SECONDS", "30.0")),
    )

    overlay_config = OverlayConfig(
        server_count=int(os.getenv("OVERLAY_SERVER_COUNT", "30")),
        demo_refresh_interval_seconds=float(os.getenv("DEMO_REFRESH_INTERVAL_SECONDS", "15.0")),
        seed=_optional_int(os.getenv("OVERLAY_SEED")),
    )

    narrative_config = NarrativeConfig(
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        model_name=os.getenv("NARRATIVE_MODEL", "openai:gpt-4o-mini"),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        simulation=simulation_config,
        detection=detection_config,
        overlay=overlay_config,
        narrative=narrative_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def reset_config_cache() -> None:
    """Clear the cached configuration so the next get_config() re-reads the environment."""
    get_config.cache_clear()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")

        if config.narrative.enabled:
            print("AI narrative provider configured")
        else:
            print("No AI provider key set; incident narratives will use the fallback text")

    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nSIMULATION")
    print(f"Fleet Size: {config.simulation.fleet_size} ({config.simulation.profile_catalog})")
    print(f"Tick Interval: {config.simulation.tick_interval_seconds}s")
    print(f"Target Critical Ratio: {config.simulation.target_critical_ratio:.1%}")
    print(f"Target Warning Ratio: {config.simulation.target_warning_ratio:.1%}")

    print("\nINCIDENT DETECTION")
    print(f"Check Interval: {config.detection.check_interval_seconds}s")
    print(f"Narrative Model: {config.narrative.model_name}")
    print(f"Narrative Timeout: {config.detection.narrative_timeout_seconds}s")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
