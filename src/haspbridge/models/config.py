from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Application-wide settings populated from environment variables and .env file.

    Values here override the config file and are in turn overridden by
    command-line flags.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="HASPBRIDGE_",
        extra="ignore",
    )

    config_file: str | None = None
    mqtt_broker_address: str | None = None
    signalk_url: str | None = None
    signalk_token: str | None = None
    self_id: str | None = None
    output_format: Literal["rich", "json", "quiet"] | None = None
