from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Security
    RACEREG_ADMIN_EMAIL: str = "admin@example.com"
    RACEREG_ADMIN_PASSWORD: str = "change-me"
    RACEREG_SECRET_KEY: str = "dev-secret-change-me"
    LOGIN_MAX_AGE_SECONDS: int = 60 * 60 * 12
    COOKIE_SECURE: bool = False  # True behind HTTPS

    # Database
    RACEREG_DB_URL: str = "sqlite:///./racereg.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Locking: "local" is only safe for a single process
    LOCK_BACKEND: str = "local"  # local | database
    LOCK_TTL_SECONDS: int = 30
    LOCK_POLL_INTERVAL_SECONDS: float = 0.05
    LOCK_ACQUIRE_TIMEOUT_SECONDS: float = 10.0

    # CSV
    CSV_EXPORT_DELIMITER: str = ";"
    CSV_LINE_TERMINATOR: str = "\n"

    # Numbering
    REGISTRATION_NUMBER_PREFIX: str = "REG"
    ORDER_NUMBER_PREFIX: str = "ORD"

    # Documents
    SHOP_CURRENCY: str = "HUF"
    SELLER_NAME: str = "Race Club"
    SELLER_ADDRESS: str = ""
    SELLER_TAX_NUMBER: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
