"""Application configuration using environment variables."""
import os
from functools import lru_cache
from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Application settings loaded from environment variables."""

    # Server
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "8000"))
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Morale
    SQUAD_MORALE_ENABLED: bool = os.getenv("SQUAD_MORALE_ENABLED", "true").lower() == "true"
    SQUAD_MORALE_THRESHOLD: int = int(os.getenv("SQUAD_MORALE_THRESHOLD", "50"))  # % of starting size
    SQUAD_MOB_DIVISOR: int = int(os.getenv("SQUAD_MOB_DIVISOR", "3"))
    SQUAD_MORALE_EFFECT: str = os.getenv("SQUAD_MORALE_EFFECT", "frightened").lower()
    SQUAD_MORALE_DURATION: int = int(os.getenv("SQUAD_MORALE_DURATION", "0"))  # rounds, 0 = permanent

    # Groups
    SQUAD_SETTLE_DELAY_MS: int = int(os.getenv("SQUAD_SETTLE_DELAY_MS", "100"))
    SQUAD_DEFAULT_PINNED: bool = os.getenv("SQUAD_DEFAULT_PINNED", "true").lower() == "true"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
