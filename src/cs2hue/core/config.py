"""
Configuration Management for CS2Hue.

Uses Pydantic Settings for type-safe configuration with environment
variable support and YAML file loading.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class GatewayConfig(BaseModel):
    """Light gateway selection and addressing."""
    provider: Literal["hue", "yeelight", "mock"] = "hue"
    light_ids: List[str] = Field(default_factory=list)
    bridge_ip: Optional[str] = None  # Hue only
    api_key: Optional[str] = None  # Hue only
    yeelight_devices: List[str] = Field(default_factory=list)  # "host[:port]"
    yeelight_discovery: bool = False
    io_timeout_s: float = 2.5

    @field_validator("light_ids", "yeelight_devices", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        # config.json historically stored "1, 2, 5"
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        return value


class QueueConfig(BaseModel):
    """Per-device command queue pacing."""
    throttle_s: float = 0.1
    high_latency_throttle_s: float = 0.3
    post_write_gap_s: float = 0.06
    verify_retries: int = 2
    verify_backoff_s: float = 0.15


class SceneConfig(BaseModel):
    """Scene fan-out and confirmation protocol."""
    stagger_s: float = 0.012
    assert_delay_s: float = 0.6
    final_delay_s: float = 1.2
    healthcheck_suppress_s: float = 1.5
    bri_tolerance: int = 2
    xy_tolerance: float = 0.002
    ct_tolerance: int = 2


class EffectsConfig(BaseModel):
    """Blink and fade effect parameters."""
    min_blink_period_ms: int = 120
    blink_stagger_s: float = 0.008
    fade_duration_s: float = 5.0
    fade_steps: int = 10
    fade_grace_s: float = 3.0


class BombConfig(BaseModel):
    """Bomb countdown defaults used when the bomb template is silent."""
    tick_s: float = 1.0
    default_initial_time: int = 40
    default_blink_speed_ms: int = 1000
    fallback_bri: int = 20
    stage_bri: dict[int, int] = Field(
        default={30: 20, 20: 35, 12: 50, 5: 100, 2: 150}
    )
    stage_speed_ms: dict[int, int] = Field(
        default={30: 750, 20: 500, 12: 250, 5: 150, 2: 0}
    )

    @property
    def checkpoints(self) -> List[int]:
        return sorted(set(self.stage_bri) | set(self.stage_speed_ms), reverse=True)


class RoundConfig(BaseModel):
    """Round result timing and watchdog bounds."""
    result_hold_s: float = 2.0
    result_watchdog_s: float = 6.0
    suppression_max_s: float = 4.75
    bomb_reset_grace_s: float = 0.5
    startup_default_delay_s: float = 1.0
    # Heuristic: the game does not always report win_team after a bomb outcome
    fallback_winner_on_explode: str = "T"
    fallback_winner_on_defuse: str = "CT"


class PollerConfig(BaseModel):
    """Game state polling cadence."""
    active_interval_s: float = 0.1
    idle_interval_s: float = 0.25
    retry_delay_s: float = 0.1
    warn_cooldown_s: float = 10.0


class HealthCheckConfig(BaseModel):
    """Reconciler settings."""
    enabled: bool = True
    interval_s: float = 2.0
    default_bri: int = 100
    write_race_s: float = 1.0


class ServerConfig(BaseModel):
    """Control server (game state ingest + control endpoints)."""
    host: str = "127.0.0.1"
    port: int = 8080


class Settings(BaseSettings):
    """
    Main application settings.

    Can be configured via:
    - Environment variables (prefixed with CS2HUE_)
    - YAML config file
    - Direct instantiation
    """

    # Paths
    data_dir: Path = Path(".")
    colors_path: Path = Path("colors.json")
    gamestate_path: Path = Path("gamestate.txt")
    previous_state_path: Path = Path("previousState.json")

    # Component configs
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    scene: SceneConfig = Field(default_factory=SceneConfig)
    effects: EffectsConfig = Field(default_factory=EffectsConfig)
    bomb: BombConfig = Field(default_factory=BombConfig)
    round: RoundConfig = Field(default_factory=RoundConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    healthcheck: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # Bomb countdown echo in the log
    show_bomb_timer: bool = False

    # Debug
    debug: bool = False
    log_level: str = "INFO"

    class Config:
        env_prefix = "CS2HUE_"
        env_nested_delimiter = "__"

    @classmethod
    def from_yaml(cls, path: Path) -> "Settings":
        """Load settings from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path) -> None:
        """Save settings to a YAML file."""
        with open(path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)

    def resolve(self, path: Path) -> Path:
        """Resolve a configured path against ``data_dir``."""
        return path if path.is_absolute() else self.data_dir / path
