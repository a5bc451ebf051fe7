from typing import List

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./fleet.db"
    DATABASE_ECHO: bool = False

    # Tracking
    GEOFENCE_RADIUS_METERS: float = 100.0
    OFFLINE_AFTER_MINUTES: int = 10
    ETA_MIN_SPEED_KMH: float = 20.0  # Floor applied when the bus is slow or stationary
    TRACKING_HISTORY_HOURS: int = 24
    TRACKING_HISTORY_LIMIT: int = 1000

    # Routes
    ROUTE_AVERAGE_SPEED_KMH: float = 25.0  # School bus average including stops
    MINUTES_PER_REMAINING_STOP: int = 5

    # Calendar date used for daily uniqueness (check-ins, shifts)
    SERVICE_TIMEZONE: str = "UTC"

    # Incidents
    EMERGENCY_RESPONSE_ROLE: str = "transport-manager"

    # Notification delivery
    NOTIFY_MAX_RETRIES: int = 3
    NOTIFY_BACKOFF_SECONDS: float = 1.0
    NOTIFY_WEBHOOK_URL: str = ""
    NOTIFY_TIMEOUT_SECONDS: float = 30.0

    # SMS Service (for emergency alerts)
    SMS_API_KEY: str = ""
    SMS_API_URL: str = ""
    SMS_SENDER_ID: str = "SCHOOLBUS"
    EMERGENCY_PHONES: List[str] = []

    # Email (for emergency alerts)
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    FROM_EMAIL: str = "noreply@schoolfleet.local"
    EMERGENCY_EMAILS: List[str] = []

    # WebSocket
    WEBSOCKET_PING_INTERVAL: int = 30
    WEBSOCKET_PING_TIMEOUT: int = 10

    class Config:
        env_file = ".env"

settings = Settings()
