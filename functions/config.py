import os
from dataclasses import dataclass, field

# Paths used by the mobile and web clients
POSTS_PATH = "posts"
USER_POSTS_PATH = "user-posts"
USERS_PATH = "users"
PHONE_STATUS_PATH = "phone-status"
PHONE_SMS_PATH = "phone-sms"
CUSTOM_TOKEN_STATUS_PATH = "custom-token-status"

DEFAULT_MAIL_FROM = '"Firebase Database Quickstart" <noreply@firebase.com>'
DEFAULT_SMS_API_URL = "https://api-gw.turkcell.com.tr/api/v1/sms"


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass(frozen=True)
class DigestSettings:
    enabled: bool = True
    # 0 = Sunday, as in cron
    day_of_week: int = 0
    hour: int = 14
    minute: int = 30
    top_n: int = 5

    def __post_init__(self):
        if not 0 <= self.day_of_week <= 6:
            raise ValueError(f"DIGEST_DAY_OF_WEEK must be 0-6, got {self.day_of_week}")
        if not 0 <= self.hour <= 23:
            raise ValueError(f"DIGEST_HOUR must be 0-23, got {self.hour}")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"DIGEST_MINUTE must be 0-59, got {self.minute}")
        if self.top_n < 1:
            raise ValueError(f"DIGEST_TOP_N must be positive, got {self.top_n}")

    @classmethod
    def from_env(cls) -> "DigestSettings":
        return cls(
            enabled=_flag("DIGEST_ENABLED", True),
            day_of_week=_int("DIGEST_DAY_OF_WEEK", 0),
            hour=_int("DIGEST_HOUR", 14),
            minute=_int("DIGEST_MINUTE", 30),
            top_n=_int("DIGEST_TOP_N", 5),
        )


@dataclass(frozen=True)
class SmsSettings:
    enabled: bool = False
    api_url: str = DEFAULT_SMS_API_URL
    sender: str = ""
    stub_code: str = "1234"
    code_length: int = 4
    timeout: float = 10.0
    retry_interval: float = 0.0

    @classmethod
    def from_env(cls) -> "SmsSettings":
        return cls(
            enabled=_flag("SMS_ENABLED", False),
            api_url=os.getenv("SMS_API_URL") or DEFAULT_SMS_API_URL,
            sender=os.getenv("SMS_SENDER", ""),
            stub_code=os.getenv("SMS_STUB_CODE") or "1234",
            code_length=_int("SMS_CODE_LENGTH", 4),
            timeout=_float("SMS_TIMEOUT", 10.0),
            retry_interval=_float("SMS_RETRY_INTERVAL", 0.0),
        )


@dataclass(frozen=True)
class RelayConfig:
    database_url: str | None = None
    credentials_path: str | None = None
    mail_from: str = DEFAULT_MAIL_FROM
    watch_stars: bool = True
    watch_phone_verification: bool = True
    watch_token_requests: bool = True
    transaction_max_attempts: int = 5
    transaction_base_delay: float = 0.2
    shutdown_timeout: float = 10.0
    sms: SmsSettings = field(default_factory=SmsSettings)
    digest: DigestSettings = field(default_factory=DigestSettings)

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Builds the relay configuration from environment variables.

        Secrets (RESEND_API_KEY, SMS_API_KEY) are not read here; the
        services resolve them lazily through SecretParam or the environment.
        """
        return cls(
            database_url=os.getenv("FIREBASE_DATABASE_URL"),
            credentials_path=os.getenv("FIREBASE_CREDENTIALS") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
            mail_from=os.getenv("MAIL_FROM") or DEFAULT_MAIL_FROM,
            watch_stars=_flag("WATCH_STARS", True),
            watch_phone_verification=_flag("WATCH_PHONE_VERIFICATION", True),
            watch_token_requests=_flag("WATCH_TOKEN_REQUESTS", True),
            transaction_max_attempts=_int("TRANSACTION_MAX_ATTEMPTS", 5),
            transaction_base_delay=_float("TRANSACTION_BASE_DELAY", 0.2),
            shutdown_timeout=_float("SHUTDOWN_TIMEOUT", 10.0),
            sms=SmsSettings.from_env(),
            digest=DigestSettings.from_env(),
        )
