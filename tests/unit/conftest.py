from __future__ import annotations

from pathlib import Path

import pytest

from cs2hue.core.config import (
    BombConfig,
    EffectsConfig,
    GatewayConfig,
    HealthCheckConfig,
    PollerConfig,
    QueueConfig,
    RoundConfig,
    SceneConfig,
    Settings,
)


@pytest.fixture
def fast_settings(tmp_path: Path) -> Settings:
    """Settings with every delay shrunk so async scenarios finish in milliseconds."""
    return Settings(
        data_dir=tmp_path,
        gateway=GatewayConfig(provider="mock", light_ids=["1", "2"], io_timeout_s=0.5),
        queue=QueueConfig(
            throttle_s=0.0,
            high_latency_throttle_s=0.0,
            post_write_gap_s=0.0,
            verify_retries=1,
            verify_backoff_s=0.001,
        ),
        scene=SceneConfig(stagger_s=0.0, assert_delay_s=0.02, final_delay_s=0.02, healthcheck_suppress_s=0.0),
        effects=EffectsConfig(
            min_blink_period_ms=10,
            blink_stagger_s=0.0,
            fade_duration_s=0.05,
            fade_steps=5,
            fade_grace_s=0.2,
        ),
        bomb=BombConfig(tick_s=0.01),
        round=RoundConfig(
            result_hold_s=0.05,
            result_watchdog_s=0.3,
            suppression_max_s=0.05,
            bomb_reset_grace_s=0.02,
            startup_default_delay_s=0.01,
        ),
        poller=PollerConfig(active_interval_s=0.01, idle_interval_s=0.01, retry_delay_s=0.001),
        healthcheck=HealthCheckConfig(interval_s=0.0, write_race_s=0.0),
    )
