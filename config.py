import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote_plus

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _mysql_url() -> str:
    host = os.getenv("MYSQL_HOST", "127.0.0.1")
    port = os.getenv("MYSQL_PORT", "3306")
    user = os.getenv("MYSQL_USER", "root")
    password = os.getenv("MYSQL_PASSWORD", "")
    name = os.getenv("MYSQL_DB", "whatsapp_billing")
    return f"mysql+pymysql://{user}:{quote_plus(password)}@{host}:{port}/{name}"


@dataclass
class DatabaseConfig:
    url: str = field(default_factory=lambda: os.getenv("DATABASE_URL") or _mysql_url())
    pool_size: int = int(os.getenv("DB_POOL_SIZE", "20"))
    max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))
    echo: bool = _env_bool("DB_ECHO")


@dataclass
class MongoConfig:
    uri: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    db_name: str = os.getenv("MONGO_DB_NAME", "whatsapp_billing")


@dataclass
class AuthConfig:
    jwt_secret: str = os.getenv("JWT_SECRET", "change-me-in-production")
    jwt_algorithm: str = "HS256"
    jwt_expires_hours: int = int(os.getenv("JWT_EXPIRES_HOURS", "24"))
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))


@dataclass
class WebhookConfig:
    verify_token: str = os.getenv("WEBHOOK_VERIFY_TOKEN", "")


@dataclass
class SeedConfig:
    admin_email: Optional[str] = os.getenv("SEED_ADMIN_EMAIL")
    admin_password: Optional[str] = os.getenv("SEED_ADMIN_PASSWORD")
    admin_name: str = os.getenv("SEED_ADMIN_NAME", "Super Admin")
    system_wallet_paise: int = int(os.getenv("SEED_SYSTEM_WALLET_PAISE", "10000000"))
    default_plan_name: str = "Default"
    default_utility_paise: int = 100
    default_marketing_paise: int = 150
    default_authentication_paise: int = 80
    default_service_paise: int = 120


@dataclass
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    mongo: MongoConfig = field(default_factory=MongoConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    seed: SeedConfig = field(default_factory=SeedConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    cors_origins: List[str] = field(
        default_factory=lambda: [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]
    )
    run_startup_tasks: bool = True


def load_config() -> AppConfig:
    return AppConfig()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
