import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_MONGO_URI = "mongodb://localhost:27017/ecommerce"
DEFAULT_CALLBACK_URL = "http://localhost:5000/api/auth/google/callback"

MB = 1024 * 1024


def load_environment(path: Optional[Path] = None) -> None:
    load_dotenv(path or BASE_DIR / "config.env")


def _env_str(environ: Mapping[str, str], name: str, default: str = "") -> str:
    return (environ.get(name) or default).strip()


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class MongoOptions:
    server_selection_timeout_ms: int = 30000
    socket_timeout_ms: int = 45000
    connect_timeout_ms: int = 30000
    max_pool_size: int = 10
    min_pool_size: int = 2
    heartbeat_frequency_ms: int = 10000

    def client_kwargs(self) -> Dict[str, object]:
        # TLS and majority writes are not configurable.
        return {
            "serverSelectionTimeoutMS": self.server_selection_timeout_ms,
            "socketTimeoutMS": self.socket_timeout_ms,
            "connectTimeoutMS": self.connect_timeout_ms,
            "maxPoolSize": self.max_pool_size,
            "minPoolSize": self.min_pool_size,
            "retryWrites": True,
            "retryReads": True,
            "w": "majority",
            "tls": True,
            "tlsAllowInvalidCertificates": False,
            "heartbeatFrequencyMS": self.heartbeat_frequency_ms,
        }


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    port: int = 5000
    mongo_uri: str = DEFAULT_MONGO_URI
    database_name: str = "ecommerce"
    mongo: MongoOptions = field(default_factory=MongoOptions)
    db_retry_delay: float = 5.0
    frontend_url: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    google_callback_url: str = DEFAULT_CALLBACK_URL
    jwt_secret_key: str = "change-me-in-production"
    jwt_access_token_expires_hours: int = 168
    secret_key: str = "dev-change-me"
    upload_folder: str = str(BASE_DIR / "uploads")
    max_content_length: int = 10 * MB
    max_file_size: int = 5 * MB
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def google_oauth_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def frontend_base_url(self) -> str:
        return (self.frontend_url or "http://localhost:3000").rstrip("/")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the process environment (or an explicit mapping)."""
        if environ is None:
            load_environment()
            environ = os.environ

        mongo = MongoOptions(
            server_selection_timeout_ms=_env_int(
                environ, "MONGO_SERVER_SELECTION_TIMEOUT_MS", 30000
            ),
            socket_timeout_ms=_env_int(environ, "MONGO_SOCKET_TIMEOUT_MS", 45000),
            connect_timeout_ms=_env_int(environ, "MONGO_CONNECT_TIMEOUT_MS", 30000),
            max_pool_size=_env_int(environ, "MONGO_MAX_POOL_SIZE", 10),
            min_pool_size=_env_int(environ, "MONGO_MIN_POOL_SIZE", 2),
            heartbeat_frequency_ms=_env_int(
                environ, "MONGO_HEARTBEAT_FREQUENCY_MS", 10000
            ),
        )

        return cls(
            environment=_env_str(environ, "APP_ENV", "development").lower(),
            port=_env_int(environ, "PORT", 5000),
            mongo_uri=_env_str(environ, "MONGODB_URI", DEFAULT_MONGO_URI),
            database_name=_env_str(environ, "MONGODB_DATABASE", "ecommerce"),
            mongo=mongo,
            frontend_url=_env_str(environ, "FRONTEND_URL"),
            google_client_id=_env_str(environ, "GOOGLE_CLIENT_ID"),
            google_client_secret=_env_str(environ, "GOOGLE_CLIENT_SECRET"),
            google_callback_url=_env_str(
                environ, "GOOGLE_CALLBACK_URL", DEFAULT_CALLBACK_URL
            ),
            jwt_secret_key=_env_str(
                environ, "JWT_SECRET_KEY", "change-me-in-production"
            ),
            jwt_access_token_expires_hours=_env_int(
                environ, "JWT_ACCESS_TOKEN_EXPIRES_HOURS", 168
            ),
            secret_key=_env_str(environ, "SECRET_KEY", "dev-change-me"),
            upload_folder=_env_str(
                environ, "UPLOAD_FOLDER", str(BASE_DIR / "uploads")
            ),
            log_level=_env_str(environ, "LOG_LEVEL", "INFO").upper(),
        )
