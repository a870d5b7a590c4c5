from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # project root
ENV_PATH = BASE_DIR / ".env"

# Load .env into the environment before Settings reads it
load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=False,
    )

    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    JWT_SECRET: str
    JWT_ALG: str = "HS256"
    JWT_ACCESS_MINUTES: int = 30

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    CURRENCY: str = "USD"

    # used when a template sets new_user_only without new_user_max_days
    NEW_USER_DEFAULT_MAX_DAYS: int = 7


settings = Settings()
