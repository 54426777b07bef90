"""Runtime configuration for the portal, read from the environment once at import."""
import os
from typing import NamedTuple, Optional


SANDBOX_GATEWAY = "https://openapi-sandbox.dl.alipaydev.com/gateway.do"
PRODUCTION_GATEWAY = "https://openapi.alipay.com/gateway.do"


class Settings(NamedTuple):
    database_url: str
    jwt_secret: str
    jwt_expires_seconds: int
    alipay_app_id: str
    alipay_private_key: str
    alipay_public_key: str
    alipay_sign_type: str
    alipay_env: str
    alipay_notify_url: Optional[str]
    alipay_return_url: Optional[str]
    renewal_mode: str
    annual_days: int
    log_level: str
    log_dir: Optional[str]

    @property
    def alipay_gateway(self) -> str:
        return SANDBOX_GATEWAY if self.alipay_env == "sandbox" else PRODUCTION_GATEWAY


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def load_settings() -> Settings:
    renewal_mode = _env("MEMBERSHIP_RENEWAL_MODE", "reset")
    if renewal_mode not in ("reset", "extend"):
        raise ValueError("MEMBERSHIP_RENEWAL_MODE must be 'reset' or 'extend'")
    return Settings(
        database_url=_env("DATABASE_URL", "sqlite:///./portal.db"),
        jwt_secret=_env("JWT_SECRET", "dev-secret"),
        jwt_expires_seconds=int(_env("JWT_EXPIRES_SECONDS", str(60 * 60 * 24))),
        alipay_app_id=_env("ALIPAY_APP_ID", ""),
        alipay_private_key=_env("ALIPAY_APP_PRIVATE_KEY", ""),
        alipay_public_key=_env("ALIPAY_PUBLIC_KEY", ""),
        alipay_sign_type=_env("ALIPAY_SIGN_TYPE", "RSA2"),
        alipay_env=_env("ALIPAY_ENV", "sandbox"),
        alipay_notify_url=_env("ALIPAY_NOTIFY_URL"),
        alipay_return_url=_env("ALIPAY_RETURN_URL"),
        renewal_mode=renewal_mode,
        annual_days=int(_env("ANNUAL_MEMBERSHIP_DAYS", "365")),
        log_level=_env("LOG_LEVEL", "INFO"),
        log_dir=_env("LOG_DIR"),
    )


state = load_settings()


def get_settings() -> Settings:
    return state
