"""Global constants and input normalization helpers."""
from urllib.parse import urlparse

MEME_CATEGORIES = (
    "Funny",
    "Relatable",
    "Dark",
    "Wholesome",
    "Political",
    "Gaming",
    "Animals",
    "Other",
)

MAX_CAPTION_LENGTH = 500
MAX_URL_LENGTH = 2048
ALLOWED_URL_SCHEMES = {"http", "https"}

DEFAULT_PAGE = 1

GOOGLE_AUTHORIZATION_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_SCOPES = "openid email profile"

OAUTH_STATE_COOKIE = "meme_oauth_state"
OAUTH_STATE_TTL_SECONDS = 600

SESSION_TOKEN_BYTES = 32

# Error codes carried in the response envelope
UNAUTHORIZED = "UNAUTHORIZED"
NOT_FOUND = "NOT_FOUND"
INVALID_INPUT = "INVALID_INPUT"
NO_MEMES_FOUND = "NO_MEMES_FOUND"
INTERNAL_ERROR = "INTERNAL_ERROR"
METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"


def is_valid_category(category: str) -> bool:
    """Check category membership (case-sensitive)."""
    return category in MEME_CATEGORIES


def is_valid_url(url: str) -> bool:
    """Check that url is an absolute http(s) URL with a host."""
    if not url or len(url) > MAX_URL_LENGTH:
        return False
    if any(c.isspace() for c in url):
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme.lower() in ALLOWED_URL_SCHEMES and bool(parsed.netloc) and bool(parsed.hostname)


def normalize_email(email: str) -> str:
    """Lower-case and trim an email address."""
    return str(email).strip().lower()


def normalize_caption(caption: str) -> str:
    """Trim a caption and enforce length bounds.

    Raises ValueError when the caption is empty after trimming or too long.
    """
    cleaned = str(caption).strip()
    if not cleaned:
        raise ValueError("caption must not be empty")
    if len(cleaned) > MAX_CAPTION_LENGTH:
        raise ValueError(f"caption exceeds maximum length of {MAX_CAPTION_LENGTH}")
    return cleaned
