from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Default target database; requests may bring their own connection string
    DATABASE_URL: str = ""

    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_API_URL: str = "https://api.anthropic.com/v1/messages"
    ANTHROPIC_VERSION: str = "2023-06-01"
    AGENT_MODEL: str = "claude-haiku-4-5"
    AGENT_MAX_TOKENS: int = 4096
    LLM_TIMEOUT_SECONDS: float = 60.0

    MAX_AGENT_STEPS: int = 25

    CONNECT_TIMEOUT_SECONDS: float = 10.0
    QUERY_TIMEOUT_SECONDS: float = 30.0
    DEFAULT_ROW_LIMIT: int = 1000
    AGENT_ROW_LIMIT: int = 100
    AGENT_MAX_ROW_LIMIT: int = 1000

    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
