import datetime
import logging
import os
import re
import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, ValidationError, ConfigDict
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_ignore_empty=False,
        case_sensitive=False  # Make env vars case-insensitive
    )

    logging_level: str = "INFO"
    timezone: str = "UTC"

    database_url: str = "sqlite:////data/memes.db"

    # Google OAuth client
    google_client_id: str | None = None
    google_client_secret: str | None = None

    backend_url: str = "http://localhost:3000"
    frontend_url: str = "http://localhost:4200"
    login_success_path: str = "/"
    login_failure_path: str = "/login"
    logout_redirect_path: str = "/login"

    # Session cookie
    cookie_key: str | None = None
    session_cookie_name: str = "meme_session"
    session_max_age: str = "24h"
    cookie_secure: bool = True

    # Listing
    max_page_size: int = 100
    default_page_size: int = 10

    host: str = "0.0.0.0"
    port: int = 3000

    @field_validator("session_max_age")
    @classmethod
    def validate_intervals(cls, v, info):
        if v is None or (isinstance(v, str) and v.strip() == ""):
            raise ValueError(f"{info.field_name} cannot be None or empty string")
        try:
            parse_interval(str(v))
            return v
        except Exception as exc:
            raise ValueError(f"Invalid interval: {exc}") from exc

    @field_validator("max_page_size")
    @classmethod
    def validate_max_page_size(cls, v):
        if int(v) < 1:
            raise ValueError("max_page_size must be >= 1")
        if int(v) > 1000:
            raise ValueError("max_page_size must be <= 1000")
        return int(v)

    @field_validator("default_page_size")
    @classmethod
    def validate_default_page_size(cls, v, info):
        if int(v) < 1:
            raise ValueError("default_page_size must be >= 1")
        upper = info.data.get('max_page_size')
        if upper is not None and int(v) > upper:
            raise ValueError("default_page_size must be <= max_page_size")
        return int(v)

    @field_validator("backend_url", "frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return str(v).rstrip('/')

    def model_post_init(self, __context):
        """Report OAuth configuration after all fields are loaded."""
        required_fields = [
            ('google_client_id', self.google_client_id),
            ('google_client_secret', self.google_client_secret),
            ('cookie_key', self.cookie_key),
        ]

        missing = [name for name, value in required_fields if not value]

        if missing:
            logger.warning("Google login not fully configured, missing settings: %s", missing)
        else:
            logger.debug("Google OAuth client id: %s...", str(self.google_client_id)[:30])
            logger.debug("OAuth callback: %s", self.oauth_callback_url)

    @field_validator("google_client_secret", "cookie_key", mode="before")
    @classmethod
    def _prefer_docker_secret(cls, v, info):
        """
        Prefer Docker secrets mounted at /run/secrets/<NAME> over environment variables.
        Tries secret files with the field name upper-cased and as-is.
        """
        secret = None
        try:
            candidates = [info.field_name.upper(), info.field_name]
            for name in candidates:
                path = f"/run/secrets/{name}"
                if os.path.isfile(path):
                    with open(path, "r", encoding="utf-8") as f:
                        data = f.read().strip()
                    if data:
                        secret = data
                        break
        except Exception:
            secret = None
        if secret:
            logger.debug("Using docker secret for %s", info.field_name)
            return secret
        return v

    @property
    def oauth_callback_url(self) -> str:
        return f"{self.backend_url}/auth/google/callback"

    @property
    def session_max_age_seconds(self) -> int:
        return parse_interval(self.session_max_age)

    @property
    def login_success_url(self) -> str:
        return self.frontend_url + self.login_success_path

    @property
    def login_failure_url(self) -> str:
        return self.frontend_url + self.login_failure_path

    @property
    def logout_redirect_url(self) -> str:
        return self.frontend_url + self.logout_redirect_path


def load_settings() -> Settings:
    try:
        settings = Settings()
        return settings
    except ValidationError as e:
        logger.error("Configuration error:")
        for err in e.errors():
            logger.error(" - %s: %s", err.get('loc'), err.get('msg'))
        sys.exit(1)


class LocalISOFormatter(logging.Formatter):
    def __init__(self, fmt=None, datefmt=None, tz_name: str | None = None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._tz = None
        self._tz_name = tz_name
        if tz_name:
            try:
                self._tz = ZoneInfo(tz_name)
            except ZoneInfoNotFoundError:
                self._tz = None

    def formatTime(self, record, datefmt=None):
        if self._tz is not None:
            dt = datetime.datetime.fromtimestamp(record.created, tz=self._tz)
        else:
            dt = datetime.datetime.fromtimestamp(record.created).astimezone()
        return dt.isoformat(timespec='milliseconds')


def configure_logging(settings: Settings | None = None):
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        tzname = getattr(settings, 'timezone', None) if settings is not None else None
        formatter = LocalISOFormatter('%(asctime)s %(levelname)s %(name)s %(message)s', tz_name=tzname)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    if settings is not None:
        lvl = str(getattr(settings, 'logging_level', 'INFO')).strip().upper()
        numeric = getattr(logging, lvl, None)
        if not isinstance(numeric, int):
            root.setLevel(logging.INFO)
        else:
            root.setLevel(numeric)
    else:
        root.setLevel(logging.INFO)

    logger.info("Logging configured; root level=%s", logging.getLevelName(root.level))

    noisy = ['httpx', 'httpcore', 'authlib', 'urllib3']
    for n in noisy:
        logging.getLogger(n).setLevel(logging.WARNING)

    for logger_name in ['uvicorn', 'uvicorn.error']:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    if root.level <= logging.DEBUG:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO)
    else:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


_INTERVAL_RE = re.compile(
    r"([+-]?\d+)\s*(s|sec|secs|second|seconds|m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)?"
)


def parse_interval(interval: str) -> int:
    if not interval:
        raise ValueError("Empty interval")
    s = str(interval).strip().lower()

    m = _INTERVAL_RE.fullmatch(s)
    if not m:
        raise ValueError(f"Invalid interval '{interval}'")
    raw_num = m.group(1)
    num = int(raw_num)
    unit = m.group(2) or "s"

    if raw_num.startswith('-') or num < 0:
        raise ValueError("Interval must be non-negative")
    if num == 0:
        raise ValueError("Interval must be positive")

    if unit.startswith("s"):
        return num
    if unit.startswith("m"):
        return num * 60
    if unit.startswith("h"):
        return num * 3600
    if unit.startswith("d"):
        return num * 86400
    return num
