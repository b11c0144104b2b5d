"""Runtime configuration read from the environment."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Every field is read from ``CANVAS_CHAT_<FIELD>``, except the API key,
    which keeps the ``GEMINI_API_KEY`` name the Gemini client uses.
    """

    model_config = SettingsConfigDict(
        env_prefix="CANVAS_CHAT_",
        extra="ignore",
        populate_by_name=True,
    )

    gemini_api_key: Optional[str] = Field(default=None, validation_alias="GEMINI_API_KEY")
    default_model: str = "gemini-1.5-flash"
    title_model: str = "gemini-1.5-pro"
    page_size: int = Field(default=20, ge=1)
    public_url: str = "http://localhost:8000/files"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls()
