from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "CampusLearning User Service"
    port: int = 5001

    # Database: PostgreSQL in production (postgresql+psycopg_async://user:pw@host:5432/db?sslmode=require),
    # SQLite (aiosqlite) for local development
    db_url: str = "sqlite+aiosqlite:///./user_service.db"
    db_echo: bool = False

    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Session / correlation token lifetimes
    refresh_token_expire_days: int = 30
    two_fa_challenge_expire_minutes: int = 5
    two_fa_setup_expire_minutes: int = 15
    unlock_intermediate_expire_minutes: int = 10

    # Environment configuration
    environment: str = "development"  # development, staging, or production

    # SMTP configuration
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_use_tls: bool = True
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: str = "noreply@campuslearning.dev"
    email_delivery_enabled: bool = True

    frontend_url: str = "http://localhost:5004"

    # Account Lockout Policy
    max_failed_attempts: int = 5
    lockout_duration_minutes: int = 30
    time_window_minutes: int = 15
    unlock_token_expiry_hours: int = 24

    # Emailed one-time codes (password reset, passwordless login)
    password_reset_expire_minutes: int = 60
    login_otp_expire_minutes: int = 15
    email_code_length: int = 6
    email_code_max_attempts: int = 5

    # Two-Factor Authentication
    totp_issuer_name: str = "CampusLearning"
    totp_valid_window: int = 2  # +/- 2 steps of 30s

    # OAuth providers
    google_client_id: Optional[str] = None
    google_tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo"
    facebook_graph_url: str = "https://graph.facebook.com/me"
    oauth_http_timeout_seconds: int = 10

    # Rate Limiting Configuration
    rate_limit_enabled: bool = True

    REGISTER_RATE_LIMIT_PER_IP: int = 3  # Registration attempts per IP
    REGISTER_RATE_LIMIT_WINDOW: int = 3600  # 1 hour in seconds

    UNLOCK_EMAIL_RATE_LIMIT_PER_IP: int = 5  # Unlock email requests per IP
    UNLOCK_EMAIL_RATE_LIMIT_WINDOW: int = 3600

    OAUTH_RATE_LIMIT_PER_IP: int = 20
    OAUTH_RATE_LIMIT_WINDOW: int = 600

    PASSWORD_RESET_RATE_LIMIT_PER_IP: int = 5  # Reset code requests per IP
    PASSWORD_RESET_RATE_LIMIT_WINDOW: int = 3600

    LOGIN_OTP_RATE_LIMIT_PER_IP: int = 10  # Login code requests per IP
    LOGIN_OTP_RATE_LIMIT_WINDOW: int = 900

    DEFAULT_AUTH_RATE_LIMIT_PER_IP: int = 10  # Default auth attempts per IP
    DEFAULT_AUTH_RATE_LIMIT_WINDOW: int = 600  # 10 minutes in seconds

    # Redis URL for distributed rate limiting (optional)
    REDIS_URL: Optional[str] = None

    # Housekeeping
    cleanup_interval_minutes: int = 60
    login_attempt_retention_days: int = 90

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_sqlite(self) -> bool:
        return self.db_url.startswith("sqlite")


settings = Settings()
