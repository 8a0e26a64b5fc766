from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # App
    APP_NAME: str = "ReceiptLearning"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Supabase (durable pattern storage; empty URL keeps patterns in memory)
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""
    SUPABASE_SERVICE_KEY: str = ""
    PATTERN_TABLE: str = "learned_patterns"

    # Pattern store
    PATTERN_WINDOW: int = 50
    PATTERN_MAX_AGE_DAYS: Optional[int] = None
    PATTERN_WRITE_ATTEMPTS: int = 5
    LEARNING_SERVICE_CACHE_SIZE: int = 256

    # Extraction
    TOTAL_KEYWORD_TOLERANCE_PX: int = 20
    MAX_REASONABLE_AMOUNT: int = 10000
    MIN_RECEIPT_YEAR: int = 2000

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
