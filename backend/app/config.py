from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    DATABASE_URL: str = "sqlite:///./depthsafe.db"
    LOG_LEVEL: str = "INFO"
    # Connection pool (ignored for SQLite)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    # CORS origins (comma-separated string for env var support)
    CORS_ORIGINS: str = "http://localhost:5173"
    MAX_QUERY_LIMIT: int = 500
    # Optional API key; when unset all requests pass
    DEPTHSAFE_API_KEY: Optional[str] = None
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"
    # Fetch tide/weather data over the network (off → estimated tide, neutral environment)
    ONLINE_DATA_SOURCES: bool = True
    # Extra clearance (meters) added to vessel draft when computing safety margin
    SAFETY_MARGIN_CONSTANT_M: float = 0.5
    # Grid resolutions in degrees, comma-separated (coarse first)
    GRID_RESOLUTIONS: str = "0.01,0.002"
    # Tide correction
    TIDE_OBSERVATION_WINDOW_MINUTES: int = 30
    TIDE_MAX_STATION_DISTANCE_KM: float = 50.0
    TIDE_CACHE_TTL_SECONDS: int = 900  # 15 min
    AREA_CACHE_TTL_SECONDS: int = 300
    # External data sources
    NOAA_TIDES_API_URL: str = "https://api.tidesandcurrents.noaa.gov/api/prod/datagetter"
    OPEN_METEO_API_URL: str = "https://api.open-meteo.com/v1/forecast"
    OPEN_METEO_MARINE_URL: str = "https://marine-api.open-meteo.com/v1/marine"
    HTTP_TIMEOUT_SECONDS: float = 10.0
    # Alert hierarchy
    ALERT_DEDUP_RADIUS_M: float = 200.0
    ALERT_TTL_SECONDS: int = 1800
    ALERT_RETENTION_SECONDS: int = 3600  # finished alerts are kept this long for lookups
    SUBSCRIBER_QUEUE_SIZE: int = 256
    # How often the API server expires stale alerts and applies escalation rules (0 disables)
    ALERT_MAINTENANCE_INTERVAL_SECONDS: float = 15.0
    # Emergency protocol
    EMERGENCY_ACK_TIMEOUT_SECONDS: float = 120.0
    EMERGENCY_MAX_RETRIES: int = 3
    SAFETY_PROTOCOLS_CONFIG: str = "config/safety_protocols.yaml"
    # Monitoring loop
    MONITOR_INTERVAL_SECONDS: float = 10.0
    # Offline submission queue
    OFFLINE_QUEUE_MAX_SIZE: int = 1000
    OFFLINE_QUEUE_BATCH_SIZE: int = 10
    OFFLINE_QUEUE_MAX_RETRIES: int = 3
    OFFLINE_QUEUE_RETRY_DELAYS: str = "5,15,60"  # seconds, per retry attempt
    OFFLINE_QUEUE_RETENTION_HOURS: int = 24
    OFFLINE_SYNC_INTERVAL_SECONDS: float = 30.0
    OFFLINE_QUEUE_CLAIM_TIMEOUT_SECONDS: float = 300.0


def parse_float_list(raw: str) -> list[float]:
    """Parse a comma-separated settings value like ``"0.01,0.002"``."""
    return [float(part) for part in raw.split(",") if part.strip()]


settings = Settings()
