from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_road_data_path() -> str:
    # Packaged sample network, used when no road export is configured.
    return str(Path(__file__).resolve().parent / "data" / "sample_roads.geojson")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping routing constants out of code."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default="out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    road_data_path: str = Field(default="", alias="ROAD_DATA_PATH")

    # Two coordinates that agree to this many decimal digits share a graph node (~0.1m at 6).
    node_key_precision: int = Field(default=6, ge=3, le=9, alias="NODE_KEY_PRECISION")
    traffic_window_minutes: int = Field(default=30, ge=1, le=24 * 60, alias="TRAFFIC_WINDOW_MINUTES")
    detour_multiplier_threshold: float = Field(default=1.2, ge=1.0, alias="DETOUR_MULTIPLIER_THRESHOLD")

    fallback_speed_kmh: float = Field(default=40.0, gt=0.0, alias="FALLBACK_SPEED_KMH")
    default_cruise_speed_kmh: float = Field(default=50.0, gt=0.0, alias="DEFAULT_CRUISE_SPEED_KMH")
    fallback_route_segments: int = Field(default=10, ge=1, le=1000, alias="FALLBACK_ROUTE_SEGMENTS")

    waypoint_threshold_m: float = Field(default=50.0, gt=0.0, alias="WAYPOINT_THRESHOLD_M")
    traffic_alert_radius_m: float = Field(default=5000.0, gt=0.0, alias="TRAFFIC_ALERT_RADIUS_M")

    route_store_ttl_s: int = Field(default=86_400, ge=1, alias="ROUTE_STORE_TTL_S")
    route_store_max_entries: int = Field(default=4096, ge=1, alias="ROUTE_STORE_MAX_ENTRIES")
    notification_queue_max: int = Field(default=256, ge=1, le=100_000, alias="NOTIFICATION_QUEUE_MAX")
    location_history_max: int = Field(default=1000, ge=1, le=100_000, alias="LOCATION_HISTORY_MAX")

    def resolved_road_data_path(self) -> Path:
        explicit = (self.road_data_path or "").strip()
        if explicit:
            return Path(explicit)
        return Path(_default_road_data_path())


settings = Settings()
