"""
Runtime configuration read from environment variables.
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "taskhub-development-secret"


@dataclass(frozen=True)
class Settings:
    """Process-wide settings for the TaskHub service."""

    database_path: str = "taskhub.db"
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_expiry_minutes: int = 60
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from the current environment.

        Unset variables fall back to the dataclass defaults.
        """
        settings = cls(
            database_path=os.getenv("DATABASE_PATH", cls.database_path),
            jwt_secret=os.getenv("TASKHUB_JWT_SECRET", cls.jwt_secret),
            jwt_algorithm=os.getenv("TASKHUB_JWT_ALGORITHM", cls.jwt_algorithm),
            jwt_expiry_minutes=int(
                os.getenv("TASKHUB_JWT_EXPIRY_MINUTES", str(cls.jwt_expiry_minutes))
            ),
            log_level=os.getenv("TASKHUB_LOG_LEVEL", cls.log_level).upper(),
            host=os.getenv("TASKHUB_HOST", cls.host),
            port=int(os.getenv("TASKHUB_PORT", str(cls.port))),
        )
        if settings.jwt_secret == DEFAULT_JWT_SECRET:
            logger.warning("TASKHUB_JWT_SECRET not set, using the development secret")
        return settings
