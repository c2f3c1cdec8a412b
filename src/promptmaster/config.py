from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field("sqlite:///promptmaster.db")
    api_title: str = Field("PromptMaster API")
    jwt_secret: str = Field("secret")
    jwt_algorithm: str = Field("HS256")
    token_expire_days: int = Field(7)
    default_user_password: str = Field("123456")
    allow_registration: bool = Field(False)
    seed_demo_data: bool = Field(True)
    rate_limit_enabled: bool = Field(True)
    auth_rate_limit: str = Field("5/minute")
    gemini_api_key: str = Field("")
    gemini_model: str = Field("gemini-2.0-flash")
    gemini_api_url: str = Field(
        "https://generativelanguage.googleapis.com/v1beta/models"
    )


settings = Settings()
