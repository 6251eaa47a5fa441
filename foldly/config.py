from pydantic_settings import BaseSettings
from typing import List

GIB = 1024 ** 3
MIB = 1024 ** 2

class Settings(BaseSettings):
    # App
    APP_NAME: str = "Foldly"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "production"
    DEBUG: bool = False
    SECRET_KEY: str
    API_V1_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Identity provider tokens (verified here, issued elsewhere)
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str | None = None
    PROVISIONING_WEBHOOK_SECRET: str | None = None

    # Storage
    STORAGE_BACKEND: str = "b2"  # b2, local
    LOCAL_STORAGE_ROOT: str = "./uploads"
    B2_KEY_ID: str | None = None
    B2_APP_KEY: str | None = None
    B2_BUCKET_NAME: str | None = None
    B2_ENDPOINT_URL: str | None = None
    S3_PRESIGNED_URL_EXPIRY: int = 3600  # 1 hour

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"
    RECONCILE_INTERVAL_SECONDS: int = 3600
    OTP_SWEEP_INTERVAL_SECONDS: int = 300

    # Email
    SMTP_SERVER: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    FROM_EMAIL: str = "noreply@foldly.com"

    # Security
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    RATE_LIMIT_PER_MINUTE: int = 60

    # Monitoring
    SENTRY_DSN: str = ""

    # Folder hierarchy
    MAX_FOLDER_DEPTH: int = 20
    MAX_FOLDER_NAME_LENGTH: int = 255

    # Storage Quotas
    FREE_STORAGE_BYTES: int = 1 * GIB
    PRO_STORAGE_BYTES: int = 100 * GIB
    BUSINESS_STORAGE_BYTES: int = 500 * GIB
    FREE_MAX_FILE_BYTES: int = 10 * MIB
    PRO_MAX_FILE_BYTES: int = 100 * MIB
    BUSINESS_MAX_FILE_BYTES: int = 500 * MIB
    QUOTA_WARNING_PERCENT: int = 80
    QUOTA_CRITICAL_PERCENT: int = 90

    # Editor verification
    EDITOR_OTP_EXPIRY_MINUTES: int = 10
    EDITOR_OTP_MAX_ATTEMPTS: int = 5

    # Link passwords (bcrypt)
    LINK_PASSWORD_MIN_LENGTH: int = 4
    LINK_PASSWORD_BCRYPT_ROUNDS: int = 12

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
