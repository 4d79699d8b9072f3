"""Configuration for FastAPI application."""

from pydantic_settings import BaseSettings
from pydantic import field_validator, Field
from typing import List, Union
import json

from .. import __version__


class Settings(BaseSettings):
    # API Configuration
    api_prefix: str = "/api/v1"
    api_title: str = "Aviary Backup API"
    api_version: str = __version__
    allowed_origins: Union[str, List[str]] = ["*"]

    @field_validator('allowed_origins', mode='before')
    @classmethod
    def parse_allowed_origins(cls, v):
        """Parse allowed_origins from string or list."""
        if isinstance(v, str):
            if v.startswith('['):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    return [v]
            return [v]
        return v

    # Uploads
    max_upload_size: int = Field(default=0, description="Maximum restore upload size in bytes, 0 for unlimited")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


settings = Settings()
