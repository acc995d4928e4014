# app/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        # ----------------------------
        # Database
        # ----------------------------
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()
        self.DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
        self.DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))

        # ----------------------------
        # Password policy
        # ----------------------------
        self.PASSWORD_MIN_LENGTH = int(os.getenv("PASSWORD_MIN_LENGTH", "8"))
        self.PASSWORD_MAX_LENGTH = int(os.getenv("PASSWORD_MAX_LENGTH", "64"))

        # ----------------------------
        # CORS
        # ----------------------------
        self.CORS_ORIGINS = parse_csv(os.getenv("CORS_ORIGINS"))
        if self.ENV != "prod" and not self.CORS_ORIGINS:
            self.CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]

        # ----------------------------
        # Auth / JWT
        # ----------------------------
        self.JWT_SECRET = os.getenv("JWT_SECRET", "")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_ISSUER = os.getenv("JWT_ISSUER", "tradegear-api")
        self.ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
        self.REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
        # Replaying an already-rotated refresh token revokes every live token of that user.
        self.REFRESH_REUSE_REVOKES_FAMILY = str_to_bool(
            os.getenv("REFRESH_REUSE_REVOKES_FAMILY"), default=True
        )
        # Two clients refreshing with the same token at once look like a replay to the
        # slower one. Within this many seconds of the rotation the replay is rejected
        # without revoking the family, so the faster client keeps its new session.
        self.REFRESH_REUSE_GRACE_SECONDS = int(os.getenv("REFRESH_REUSE_GRACE_SECONDS", "10"))

        # ----------------------------
        # Email verification / password reset
        # ----------------------------
        self.EMAIL_VERIFICATION_CODE_TTL_MINUTES = int(os.getenv("EMAIL_VERIFICATION_CODE_TTL_MINUTES", "10"))
        self.VERIFICATION_RESEND_COOLDOWN_SECONDS = int(os.getenv("VERIFICATION_RESEND_COOLDOWN_SECONDS", "60"))
        self.PASSWORD_RESET_TOKEN_TTL_MINUTES = int(os.getenv("PASSWORD_RESET_TOKEN_TTL_MINUTES", "30"))

        if self.ENV == "prod":
            self.FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "").strip().rstrip("/")
        else:
            self.FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").strip().rstrip("/")

        # ----------------------------
        # Email delivery
        # ----------------------------
        self.EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "resend").strip().lower()
        self.EMAIL_ENABLED = str_to_bool(os.getenv("EMAIL_ENABLED"), default=False)
        self.FROM_EMAIL = os.getenv("FROM_EMAIL", "")
        self.RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
        self.AWS_REGION = os.getenv("AWS_REGION", "")

        # ----------------------------
        # Rate limiting / captcha
        # ----------------------------
        self.RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "sql").strip().lower()  # sql | dynamodb | none
        self.DDB_RATE_LIMIT_TABLE = os.getenv("DDB_RATE_LIMIT_TABLE", "")

        self.RESEND_VERIFICATION_LIMIT = int(os.getenv("RESEND_VERIFICATION_LIMIT", "3"))
        self.RESEND_VERIFICATION_WINDOW_SECONDS = int(os.getenv("RESEND_VERIFICATION_WINDOW_SECONDS", "3600"))
        self.RESEND_VERIFICATION_CAPTCHA_LIMIT = int(os.getenv("RESEND_VERIFICATION_CAPTCHA_LIMIT", "6"))

        self.VERIFY_CODE_LIMIT = int(os.getenv("VERIFY_CODE_LIMIT", "5"))
        self.VERIFY_CODE_WINDOW_SECONDS = int(os.getenv("VERIFY_CODE_WINDOW_SECONDS", "900"))

        self.FORGOT_PASSWORD_LIMIT = int(os.getenv("FORGOT_PASSWORD_LIMIT", "3"))
        self.FORGOT_PASSWORD_WINDOW_SECONDS = int(os.getenv("FORGOT_PASSWORD_WINDOW_SECONDS", "3600"))
        self.FORGOT_PASSWORD_CAPTCHA_LIMIT = int(os.getenv("FORGOT_PASSWORD_CAPTCHA_LIMIT", "6"))

        # Per-IP guard on /auth/login
        self.LOGIN_RATE_LIMIT = int(os.getenv("LOGIN_RATE_LIMIT", "10"))
        self.LOGIN_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("LOGIN_RATE_LIMIT_WINDOW_SECONDS", "300"))

        self.CAPTCHA_ENABLED = str_to_bool(os.getenv("CAPTCHA_ENABLED"), default=False)
        self.TURNSTILE_SECRET_KEY = os.getenv("TURNSTILE_SECRET_KEY", "")

        # ----------------------------
        # Background sweepers
        # ----------------------------
        self.SWEEPERS_ENABLED = str_to_bool(os.getenv("SWEEPERS_ENABLED"), default=True)
        self.TOKEN_CLEANUP_INTERVAL_SECONDS = int(os.getenv("TOKEN_CLEANUP_INTERVAL_SECONDS", "3600"))
        self.TOKEN_CLEANUP_RETRY_SECONDS = int(os.getenv("TOKEN_CLEANUP_RETRY_SECONDS", "300"))
        self.UNVERIFIED_CLEANUP_INTERVAL_SECONDS = int(os.getenv("UNVERIFIED_CLEANUP_INTERVAL_SECONDS", "3600"))
        self.UNVERIFIED_ACCOUNT_GRACE_HOURS = int(os.getenv("UNVERIFIED_ACCOUNT_GRACE_HOURS", "24"))

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.JWT_SECRET:
            missing.append("JWT_SECRET")
        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
            if self.DB_SSLMODE != "require":
                raise RuntimeError("DB_SSLMODE must be 'require' in prod")

        if not self.FRONTEND_BASE_URL:
            missing.append("FRONTEND_BASE_URL")
        if self.FRONTEND_BASE_URL and not self.FRONTEND_BASE_URL.startswith("https://"):
            raise RuntimeError("FRONTEND_BASE_URL should be https://... in prod")

        if self.CAPTCHA_ENABLED and not self.TURNSTILE_SECRET_KEY:
            missing.append("TURNSTILE_SECRET_KEY")
        if self.EMAIL_ENABLED and not self.FROM_EMAIL:
            missing.append("FROM_EMAIL")
        if self.EMAIL_ENABLED and self.EMAIL_PROVIDER == "resend" and not self.RESEND_API_KEY:
            missing.append("RESEND_API_KEY")
        if self.RATE_LIMIT_BACKEND == "dynamodb" and not self.DDB_RATE_LIMIT_TABLE:
            missing.append("DDB_RATE_LIMIT_TABLE")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


settings = Settings()


def require_jwt_secret() -> None:
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set")
