import os
from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application configuration from environment variables"""

    # App
    app_name: str = "Convo AI"
    debug: bool = os.getenv("DEBUG", "True").lower() == "true"

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./convo_ai.db")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "")

    # Generation endpoint
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
    generation_temperature: float = float(os.getenv("GENERATION_TEMPERATURE", "0.7"))
    generation_max_tokens: int = int(os.getenv("GENERATION_MAX_TOKENS", "2048"))
    generation_timeout: float = float(os.getenv("GENERATION_TIMEOUT", "30"))

    # Daily quota for the generation endpoint (~40K calls / 30 days)
    daily_generation_limit: int = int(os.getenv("DAILY_GENERATION_LIMIT", "1333"))

    # Conversation
    max_history: int = int(os.getenv("MAX_HISTORY", "20"))
    preview_max_length: int = int(os.getenv("PREVIEW_MAX_LENGTH", "50"))

    # Workers
    enable_workers: bool = os.getenv("ENABLE_WORKERS", "True").lower() == "true"
    webhook_timeout: float = float(os.getenv("WEBHOOK_TIMEOUT", "5"))
    retention_sweep_minutes: int = int(os.getenv("RETENTION_SWEEP_MINUTES", "5"))

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
