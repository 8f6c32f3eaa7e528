from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    DB_CREATE_TABLES: bool = True
    PROJECT_NAME: str = "Bot Hosting Panel API"
    VERSION: str = "0.1.0"
    DEBUG: bool = True
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Logging configuration
    LOG_DIR: str = "logs"
    LOG_MAX_FILES: int = 5
    LOG_MAX_SIZE_MB: int = 5
    LOG_EXCLUDED_PATHS: list[str] = [
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json",
    ]
    LOG_LEVEL: str = "INFO"

    # JWT Authentication configuration
    JWT_SECRET_KEY: str  # Required, generate with: openssl rand -hex 32
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 10080  # 7 days

    # Operator access (sent as X-Admin-Key)
    ADMIN_API_KEY: str

    # Coin economy
    DAILY_COIN_COST: int = 1
    WELCOME_BONUS_COINS: int = 3

    # Provisioning
    BOT_TEMPLATE_DIR: str = "/opt/bot-template"
    BOTS_DIR: str = "/opt/bots"
    BOT_SCRIPT: str = "index.js"
    SESSION_PREVIEW_LENGTH: int = 30
    PROVISIONING_TIMEOUT_SECONDS: int = 60

    # Defaults written into every bot's environment descriptor
    BOT_NAME: str = "MARK SUMO BOT"
    BOT_PREFIX: str = "."
    BOT_MODE: str = "private"
    BOT_TIME_ZONE: str = "Africa/Lagos"

    # Process supervisor (pm2)
    SUPERVISOR_BINARY: str = "pm2"
    SUPERVISOR_COMMAND_TIMEOUT_SECONDS: int = 30

    # Daily billing run
    BILLING_SCHEDULER_ENABLED: bool = True
    BILLING_CRON_HOUR: int = 0
    BILLING_CRON_MINUTE: int = 0
    BILLING_TIMEZONE: str = "UTC"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
