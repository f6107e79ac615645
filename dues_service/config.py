# dues_service/config.py
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Database ---
    database_url: str = "sqlite:///dues_service/dues_dev.db"

    # --- Security / JWT ---
    # Tokens are issued by the identity service; we only verify them.
    jwt_secret: str = "dev-secret-please-change"
    jwt_algorithm: str = "HS256"

    # --- CORS ---
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]
    frontend_url: str = "http://localhost:5173"

    # --- Identity service ---
    identity_service_url: str = "http://localhost:3000/api/proxy"
    identity_page_size: int = 50
    identity_timeout_seconds: float = 15.0
    billable_resident_role: str = "USER_CASUAL"

    # --- Payments ---
    payment_backend: str = "local"
    stripe_api_key: Optional[str] = None
    dues_currency: str = "usd"

    # --- Document Generation ---
    pdf_output_dir: str = "uploads/pdfs"

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "plain"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

# Ensure path directory exists (for SQLite)
if settings.database_url.startswith("sqlite:///"):
    db_path = Path(settings.database_url.replace("sqlite:///", ""))
    db_path.parent.mkdir(parents=True, exist_ok=True)

# --- SQLAlchemy setup ---
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False}
    if settings.database_url.startswith("sqlite")
    else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
