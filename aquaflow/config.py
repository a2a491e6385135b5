from __future__ import annotations

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    GOOGLE_MAPS_API_KEY: str | None = Field(default=None)
    MAPPING_BASE_URL: str = Field(
        default="https://maps.googleapis.com/maps/api/distancematrix/json"
    )
    MAPPING_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    DEFAULT_ARRIVAL_MINUTES: int = Field(default=60, gt=0)
    MAX_CANDIDATES: int = Field(default=10, gt=0)
    IOT_API_KEY: str = Field(default="change_me")
    LOG_LEVEL: str = Field(default="INFO")


settings = Settings()
