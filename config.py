import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Circulation rules
    loan_period_months: int = int(os.getenv("LOAN_PERIOD_MONTHS", "1"))
    reminder_offset_days: int = int(os.getenv("REMINDER_OFFSET_DAYS", "14"))
    fine_amount: int = int(os.getenv("FINE_AMOUNT", "40"))

    # Notification side channel
    enable_notifications: bool = _env_flag("ENABLE_NOTIFICATIONS", "True")
    notification_icon: Optional[str] = os.getenv("NOTIFICATION_ICON")
    notification_sound: bool = _env_flag("NOTIFICATION_SOUND", "True")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Management System")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Upload settings
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "2097152"))  # 2MB
    allowed_image_types: list = field(
        default_factory=lambda: os.getenv(
            "ALLOWED_IMAGE_TYPES", "image/jpeg,image/png,image/webp,image/gif"
        ).split(",")
    )


settings = Settings()
