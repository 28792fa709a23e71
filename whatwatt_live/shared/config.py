"""
MODULE OVERVIEW:
Application-wide timing and connection defaults, loaded with Pydantic Settings.
Where it fits: every `ConnectionConfig` reads its defaults from here, so the
stream manager, the auth probe and the CLI agree on one set of numbers.

WHAT IS HAPPENING HERE:
The live feed has three clocks: the request timeout (how long we wait for the
device to answer at all), the heartbeat (how long a connected stream may stay
silent) and the reconnect backoff. They are declared once and can be
overridden through the environment or a `.env` file.
"""
from pydantic_settings import BaseSettings

# Device endpoints
LIVE_PATH = "/api/v1/live"
PROBE_PATH = "/api/v1/system"

STREAM_HEADERS = {
    "Accept": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

LIVE_EVENT = "live"


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"

    DEFAULT_PORT: int = 80

    # Auth probe and connect timeout
    REQUEST_TIMEOUT_S: float = 10.0

    # Heartbeat
    HEARTBEAT_TIMEOUT_S: float = 300.0
    HEARTBEAT_CHECK_INTERVAL_S: float = 60.0

    # Reconnect backoff: delay = min(attempt, MULTIPLIER) * BASE
    RECONNECT_BASE_DELAY_S: float = 5.0
    RECONNECT_MAX_ATTEMPTS: int = 10
    RECONNECT_MAX_MULTIPLIER: int = 5

    class Config:
        env_file = ".env"
        env_prefix = "WHATWATT_"
        env_file_encoding = 'utf-8'
        extra = 'ignore'

settings = Settings()
