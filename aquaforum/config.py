from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import List, Union

from dotenv import load_dotenv

# Export .env into os.environ so worker processes and SDKs see the same values

load_dotenv()


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite://./dev.db"
    # App
    APP_ENV: str = "development"
    CORS_ORIGINS: Union[str, List[str]] = "http://localhost:3000,http://127.0.0.1:3000"
    METRICS_ENABLED: bool = False
    SENTRY_DSN: str = ""

    # Redis ("" or "false" disables cache and the rq backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Uploads
    UPLOAD_DIR: str = "./uploads"
    MAX_UPLOAD_SIZE_MB: int = 5
    IMAGE_MAX_LONG_SIDE: int = 1024
    IMAGE_QUALITY: int = 85

    # Media provider: local | cloudinary | shortpixel
    MEDIA_SERVICE_PROVIDER: str = "local"
    MEDIA_RETRY_DELAY: float = 1.0
    CLOUDINARY_CLOUD_NAME: str = ""
    CLOUDINARY_API_KEY: str = ""
    CLOUDINARY_API_SECRET: str = ""
    CLOUDINARY_FOLDER: str = "aqua-forum"
    IMAGE_QUALITY_MODE: str = "auto:best"
    IMAGE_OUTPUT_FORMAT: str = "auto"
    SHORTPIXEL_API_KEY: str = ""
    SHORTPIXEL_API_SECRET: str = ""
    SHORTPIXEL_API_URL: str = "https://api.shortpixel.com/v2"
    SHORTPIXEL_RETRY_COUNT: int = 3
    SHORTPIXEL_TIMEOUT: float = 30.0

    # Vision / text LLM
    LLM_BASE_URL: str = "http://localhost:1234"
    LLM_API_KEY: str = ""
    LLM_MODEL_ID: str = "llava-1.5-7b-4096"
    TEXT_LLM_MODEL_ID: str = "llama3.2"
    LLM_PROVIDER: str = "openai"  # 'ollama' or 'openai'
    LLM_TIMEOUT: float = 60.0
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_DELAY: float = 1.0

    # Tagging queue: inline | rq
    JOBS_BACKEND: str = "inline"
    VISION_QUEUE_NAME: str = "vision-processing"
    VISION_QUEUE_CONCURRENCY: int = 2
    QUEUE_RETRY_ATTEMPTS: int = 3
    QUEUE_RETRY_DELAY: float = 5.0
    VISION_JOB_TIMEOUT: float = 120.0
    VISION_MAX_TAGS: int = 15
    VISION_MIN_CONFIDENCE: float = 0.5
    QUEUE_KEEP_COMPLETED: int = 100
    QUEUE_KEEP_FAILED: int = 50

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator('LLM_PROVIDER', 'MEDIA_SERVICE_PROVIDER', 'JOBS_BACKEND', mode='before')
    @classmethod
    def lower_choice(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def redis_enabled(self) -> bool:
        url = (self.REDIS_URL or "").strip().lower()
        return bool(url) and url != "false"

    # Pydantic v2 config
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
