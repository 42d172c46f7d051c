from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://ledger_admin:ledger_secret@db:5432/ledger_db"
    DATABASE_ECHO: bool = False
    JWT_SECRET: str = "ledger-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480
    AUDIT_STORAGE_PATH: str = "./audit_data"
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]

    # Close policy
    REQUIRE_ZERO_DIFFERENCE_CLOSE: bool = True
    REQUIRE_NO_PENDING_DRAFTS: bool = False

    # Scheduled period-close sweep
    PERIOD_CLOSE_SWEEP_ENABLED: bool = False
    PERIOD_CLOSE_SWEEP_HOURS: int = 24
    PERIOD_CLOSE_GRACE_DAYS: int = 15

    DEFAULT_CASH_ACCOUNT_CODE: str = "1000"

    class Config:
        env_file = ".env"


settings = Settings()
