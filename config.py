import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

load_dotenv()


class ConfigError(RuntimeError):
    """Raised at startup when a required setting is missing."""


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


@dataclass(frozen=True)
class Settings:
    env: str
    port: int
    mongodb_uri: str
    database_name: str
    jwt_access_secret: str
    jwt_refresh_secret: str
    jwt_access_ttl: str
    jwt_refresh_ttl: str
    cors_origin: str
    platform_commission_pct: float
    cloudinary_cloud_name: str
    cloudinary_api_key: str
    cloudinary_api_secret: str
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_pass: str
    smtp_from: str
    bcrypt_rounds: int
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=_env("APP_ENV", "development"),
            port=int(_env("PORT", "8000")),
            mongodb_uri=_env("MONGODB_URI"),
            database_name=_env("DATABASE_NAME"),
            jwt_access_secret=_env("JWT_ACCESS_SECRET"),
            jwt_refresh_secret=_env("JWT_REFRESH_SECRET"),
            jwt_access_ttl=_env("JWT_ACCESS_TTL", "15m"),
            jwt_refresh_ttl=_env("JWT_REFRESH_TTL", "7d"),
            cors_origin=_env("CORS_ORIGIN", "http://localhost:5173"),
            platform_commission_pct=float(_env("PLATFORM_COMMISSION_PCT", "10")),
            cloudinary_cloud_name=_env("CLOUDINARY_CLOUD_NAME"),
            cloudinary_api_key=_env("CLOUDINARY_API_KEY"),
            cloudinary_api_secret=_env("CLOUDINARY_API_SECRET"),
            smtp_host=_env("SMTP_HOST"),
            smtp_port=int(_env("SMTP_PORT", "587")),
            smtp_user=_env("SMTP_USER"),
            smtp_pass=_env("SMTP_PASS"),
            smtp_from=_env("SMTP_FROM", "Devlink <no-reply@devlink.app>"),
            bcrypt_rounds=int(_env("BCRYPT_ROUNDS", "10")),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origin.split(",") if o.strip()]

    def require(self) -> None:
        """Fail fast when database, JWT or media credentials are absent."""
        if not self.mongodb_uri:
            raise ConfigError("MONGODB_URI is required")
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            raise ConfigError("JWT secrets are required")
        if not (self.cloudinary_cloud_name and self.cloudinary_api_key and self.cloudinary_api_secret):
            raise ConfigError(
                "Cloudinary config (CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET) is required"
            )


settings = Settings.from_env()
