from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Network model
    network_asset_path: str = Field(default="", alias="NETWORK_ASSET_PATH")
    grid_bucket_deg: float = Field(default=0.01, gt=0.0, le=1.0, alias="GRID_BUCKET_DEG")
    search_radius_m: float = Field(default=3_000.0, ge=50.0, le=200_000.0, alias="SEARCH_RADIUS_M")
    # Radius grows with OD distance so the two endpoint discs always overlap.
    search_radius_od_factor: float = Field(default=0.6, ge=0.5, le=2.0, alias="SEARCH_RADIUS_OD_FACTOR")
    coverage_radius_m: float = Field(default=1_000.0, ge=10.0, le=50_000.0, alias="COVERAGE_RADIUS_M")
    fallback_max_speed_kph: float = Field(default=120.0, ge=5.0, le=400.0, alias="FALLBACK_MAX_SPEED_KPH")

    # Weight function
    transfer_penalty: float = Field(default=10.0, ge=0.0, alias="TRANSFER_PENALTY")
    neutral_safety_score: float = Field(default=50.0, ge=0.0, le=100.0, alias="NEUTRAL_SAFETY_SCORE")

    # Path search
    k_paths: int = Field(default=3, ge=1, le=12, alias="K_PATHS")
    search_horizon_s: int = Field(default=4 * 3600, ge=300, le=48 * 3600, alias="SEARCH_HORIZON_S")
    search_max_state_budget: int = Field(default=250_000, ge=1_000, alias="SEARCH_MAX_STATE_BUDGET")
    search_max_legs: int = Field(default=40, ge=2, le=500, alias="SEARCH_MAX_LEGS")
    search_deadline_s: float = Field(default=5.0, ge=0.1, le=120.0, alias="SEARCH_DEADLINE_S")

    # Ranking
    goodness_scale: float = Field(default=100.0, gt=0.0, alias="GOODNESS_SCALE")
    women_safe_min_safety: float = Field(default=70.0, ge=0.0, le=100.0, alias="WOMEN_SAFE_MIN_SAFETY")

    # Planning service
    planning_concurrency: int = Field(default=16, ge=1, le=512, alias="PLANNING_CONCURRENCY")
    planning_timeout_s: float = Field(default=10.0, ge=0.5, le=300.0, alias="PLANNING_TIMEOUT_S")
    route_store_ttl_s: int = Field(default=3600, ge=10, alias="ROUTE_STORE_TTL_S")
    route_store_max_entries: int = Field(default=4096, ge=1, alias="ROUTE_STORE_MAX_ENTRIES")

    # Live monitor
    reroute_delay_threshold_s: float = Field(default=300.0, ge=0.0, alias="REROUTE_DELAY_THRESHOLD_S")
    reroute_deviation_m: float = Field(default=500.0, ge=0.0, alias="REROUTE_DEVIATION_M")
    reroute_cooldown_s: float = Field(default=120.0, ge=0.0, alias="REROUTE_COOLDOWN_S")
    session_timeout_s: float = Field(default=900.0, ge=10.0, alias="SESSION_TIMEOUT_S")
    session_sweep_interval_s: float = Field(default=30.0, ge=1.0, alias="SESSION_SWEEP_INTERVAL_S")
    arrival_tolerance_m: float = Field(default=75.0, ge=1.0, alias="ARRIVAL_TOLERANCE_M")

    @model_validator(mode="after")
    def _coverage_within_search_radius(self) -> "Settings":
        # An endpoint that snaps to a node must also have that node inside the subgraph.
        if self.coverage_radius_m > self.search_radius_m:
            self.coverage_radius_m = self.search_radius_m
        self.log_level = str(self.log_level or "INFO").strip().upper() or "INFO"
        return self


settings = Settings()
