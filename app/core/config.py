from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # Role with read-only privileges used by the query executor
    READONLY_DATABASE_URL: Optional[str] = None
    SQL_ECHO: bool = False

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    LOG_LEVEL: str = "INFO"

    # Generation backend
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    SQL_GENERATION_TEMPERATURE: float = 0.2
    ANSWER_TEMPERATURE: float = 0.7
    ANSWER_MAX_TOKENS: int = 800
    GENERATION_TIMEOUT_SECONDS: float = 20.0

    # Query execution
    SQL_STATEMENT_TIMEOUT_SECONDS: float = 10.0
    SQL_MAX_ROWS: int = 100
    SQL_MAX_LENGTH: int = 8000

    # Conversation context sent to the backend
    HISTORY_MAX_TURNS: int = 10
    HISTORY_MAX_TOKENS: int = 2000

    # Schema exposed to the assistant
    SCHEMA_NAME: str = "public"
    SCHEMA_ALLOWLIST_PATH: Optional[str] = None

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def readonly_database_url(self) -> str:
        return self.READONLY_DATABASE_URL or self.DATABASE_URL


# Create a single instance of the settings to use everywhere
settings = Settings()
