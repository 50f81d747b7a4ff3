"""
Google OAuth client and login correlation tokens.

Supports:
- Authorization-code login flow with Google (PKCE S256)
- Signed, short-lived correlation cookie carrying the OAuth state
- Userinfo parsing into a validated profile
"""

import hashlib
import logging
import secrets
import base64
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from urllib.parse import urlencode

from authlib.integrations.httpx_client import AsyncOAuth2Client
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, field_validator

from .constants import (
    GOOGLE_AUTHORIZATION_URL,
    GOOGLE_SCOPES,
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    OAUTH_STATE_TTL_SECONDS,
    normalize_email,
)

logger = logging.getLogger(__name__)


class OAuthLoginError(Exception):
    """A login attempt failed at the identity provider or its payload."""


class GoogleProfile(BaseModel):
    """Subset of the Google userinfo document needed for a local user."""
    model_config = ConfigDict(extra="ignore")

    sub: str
    name: str
    email: str
    picture: Optional[str] = None

    @field_validator("sub", "name")
    @classmethod
    def _not_blank(cls, v, info):
        v = str(v).strip()
        if not v:
            raise ValueError(f"{info.field_name} must not be empty")
        return v

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v):
        v = normalize_email(v)
        if "@" not in v:
            raise ValueError("email is not an address")
        return v

    @field_validator("picture", mode="before")
    @classmethod
    def _empty_picture_is_none(cls, v):
        return v or None


class GoogleOAuthClient:
    """Manages the Google authorization-code flow.

    Uses PKCE (Proof Key for Code Exchange) in addition to the client secret.
    """

    def __init__(self, settings):
        self.client_id = settings.google_client_id
        self.client_secret = settings.google_client_secret
        self.redirect_uri = settings.oauth_callback_url
        self.scopes = GOOGLE_SCOPES

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @staticmethod
    def generate_pkce_pair() -> Dict[str, str]:
        """Generate PKCE code_verifier and code_challenge for S256."""
        # 43-128 characters, unreserved characters only
        code_verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode('utf-8').rstrip('=')

        code_challenge = base64.urlsafe_b64encode(
            hashlib.sha256(code_verifier.encode('utf-8')).digest()
        ).decode('utf-8').rstrip('=')

        return {
            'code_verifier': code_verifier,
            'code_challenge': code_challenge
        }

    def get_authorization_url(self, state: str, code_challenge: str) -> str:
        """Build the Google consent URL for the given state and PKCE challenge."""
        params = {
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'response_type': 'code',
            'scope': self.scopes,
            'state': state,
            'code_challenge': code_challenge,
            'code_challenge_method': 'S256',
            'access_type': 'online',
            'prompt': 'select_account',
        }
        return f"{GOOGLE_AUTHORIZATION_URL}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str, code_verifier: str) -> Dict[str, Any]:
        """Exchange authorization code for tokens (backend call)."""
        async with AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
        ) as client:
            token = await client.fetch_token(
                GOOGLE_TOKEN_URL,
                code=code,
                code_verifier=code_verifier,
            )
            return token

    async def get_userinfo(self, access_token: str) -> Dict[str, Any]:
        """Get user info from Google."""
        async with AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            token={'access_token': access_token, 'token_type': 'Bearer'},
        ) as client:
            resp = await client.get(GOOGLE_USERINFO_URL)
            resp.raise_for_status()
            return resp.json()

    async def fetch_profile(self, code: str, code_verifier: str) -> GoogleProfile:
        """Run the code exchange and return the caller's verified profile.

        Raises OAuthLoginError on any provider or payload failure.
        """
        try:
            token = await self.exchange_code_for_token(code, code_verifier)
        except Exception as exc:
            raise OAuthLoginError(f"token exchange failed: {exc}") from exc

        access_token = token.get('access_token') if token else None
        if not access_token:
            raise OAuthLoginError("token response has no access_token")

        try:
            userinfo = await self.get_userinfo(access_token)
        except Exception as exc:
            raise OAuthLoginError(f"userinfo request failed: {exc}") from exc

        try:
            return GoogleProfile.model_validate(userinfo)
        except Exception as exc:
            raise OAuthLoginError(f"malformed profile: {exc}") from exc


class StateSigner:
    """Signs the OAuth correlation payload carried in a cookie between
    the login redirect and the callback."""

    def __init__(self, secret: str, ttl_seconds: int = OAUTH_STATE_TTL_SECONDS):
        self.secret = secret
        self.ttl_seconds = ttl_seconds
        self.algorithm = "HS256"

    def create_token(self, state: str, code_verifier: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            'state': state,
            'cv': code_verifier,
            'iat': now,
            'exp': now + timedelta(seconds=self.ttl_seconds),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify and decode a correlation token; None when invalid or expired."""
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug(f"OAuth state verification failed: {e}")
            return None


def hash_token(token: str) -> str:
    """Hash a token for storage in database."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_state_token() -> str:
    """Generate CSRF state token for the OAuth flow."""
    return secrets.token_urlsafe(32)
