from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    DATABASE_URL: str = "postgresql+asyncpg://reform_admin:reform_secret@db:5432/reform_db"
    DB_AUTO_CREATE: bool = True
    JWT_SECRET: str = "reform-tracker-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480
    CORS_ORIGINS: list[str] = ["http://localhost:5000", "http://localhost:5173"]
    AUDIT_WRITE_TIMEOUT_SECONDS: float = 2.0
    AUDIT_SENSITIVE_PREFIXES: list[str] = ["/api/admin/"]


settings = Settings()
