"""Server-side sessions and the login lifecycle.

`SessionStore` maps opaque cookie tokens to a serialized identity.
`SessionAuthenticator` ties the OAuth client, the store and the two
identity (de)serializers together; one instance is built at startup and
handed to the HTTP layer.
"""
import datetime
import logging
import secrets
from typing import Callable, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .auth import GoogleOAuthClient, OAuthLoginError, StateSigner, generate_state_token, hash_token
from .constants import SESSION_TOKEN_BYTES
from .db import get_user, upsert_user
from .db_helpers import session_scope
from .models import User, UserSession

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def user_to_session_key(user: User) -> str:
    return str(user.id)


def user_from_session_key(session: Session, key: str) -> Optional[User]:
    try:
        user_id = int(key)
    except (TypeError, ValueError):
        return None
    return get_user(session, user_id)


class SessionStore:
    """Persists sessions in the `usersession` table.

    Database errors are never swallowed here; callers see them as failures
    rather than as an anonymous caller.
    """

    def __init__(self, engine, max_age_seconds: int = 86400):
        self.engine = engine
        self.max_age_seconds = max_age_seconds

    def create(self, session_key: str) -> str:
        """Create a new session, return the opaque token for the cookie."""
        token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
        token_hash = hash_token(token)
        now = _utcnow()
        record = UserSession(
            token_hash=token_hash,
            session_key=session_key,
            created_at=now,
            expires_at=now + datetime.timedelta(seconds=self.max_age_seconds),
        )
        with session_scope(self.engine) as session:
            session.add(record)
            session.commit()
        logger.debug("Session created: %s... for key %s", token_hash[:8], session_key)
        return token

    def resolve(self, token: Optional[str]) -> Optional[str]:
        """Return the session key for token, or None if unknown or expired."""
        if not token:
            return None
        with session_scope(self.engine) as session:
            stmt = select(UserSession.session_key).where(
                UserSession.token_hash == hash_token(token),
                UserSession.expires_at > _utcnow(),
            )
            return session.exec(stmt).first()

    def revoke(self, token: Optional[str]) -> bool:
        """Revoke (delete) a session. Unknown tokens are not an error."""
        if not token:
            return False
        token_hash = hash_token(token)
        with session_scope(self.engine) as session:
            result = session.connection().execute(
                delete(UserSession).where(UserSession.token_hash == token_hash)
            )
            session.commit()
        if result.rowcount:
            logger.debug("Session revoked: %s...", token_hash[:8])
            return True
        return False

    def purge_expired(self) -> int:
        """Remove all expired sessions."""
        with session_scope(self.engine) as session:
            result = session.connection().execute(
                delete(UserSession).where(UserSession.expires_at <= _utcnow())
            )
            session.commit()
        if result.rowcount:
            logger.info("Purged %d expired sessions", result.rowcount)
        return result.rowcount or 0


class SessionAuthenticator:
    """Login, identity lookup and logout over a `SessionStore`."""

    def __init__(
        self,
        oauth_client: GoogleOAuthClient,
        store: SessionStore,
        state_signer: StateSigner,
        to_session_key: Callable[[User], str] = user_to_session_key,
        from_session_key: Callable[[Session, str], Optional[User]] = user_from_session_key,
    ):
        self.oauth_client = oauth_client
        self.store = store
        self.state_signer = state_signer
        self.to_session_key = to_session_key
        self.from_session_key = from_session_key

    def begin_login(self) -> Tuple[str, str]:
        """Return (consent URL, signed correlation token for the state cookie)."""
        if not self.oauth_client.configured:
            raise OAuthLoginError("Google OAuth client is not configured")
        state = generate_state_token()
        pkce = self.oauth_client.generate_pkce_pair()
        url = self.oauth_client.get_authorization_url(state, pkce['code_challenge'])
        return url, self.state_signer.create_token(state, pkce['code_verifier'])

    async def complete_login(self, session: Session, code: Optional[str], state: Optional[str],
                             correlation_token: Optional[str]) -> Tuple[User, str]:
        """Finish the callback and open a session.

        Returns (user, session token). Raises OAuthLoginError when the
        attempt must be abandoned; no session exists in that case.
        """
        if not code or not state:
            raise OAuthLoginError("callback is missing code or state")
        payload = self.state_signer.verify_token(correlation_token) if correlation_token else None
        if not payload or not secrets.compare_digest(str(payload.get('state', '')), state):
            raise OAuthLoginError("state mismatch")

        profile = await self.oauth_client.fetch_profile(code, payload['cv'])
        try:
            user = upsert_user(
                session,
                google_id=profile.sub,
                display_name=profile.name,
                email=profile.email,
                profile_image=profile.picture,
            )
        except IntegrityError as exc:
            session.rollback()
            raise OAuthLoginError(f"profile conflicts with an existing user: {exc.orig}") from exc

        token = self.store.create(self.to_session_key(user))
        logger.info("User %s logged in", user.id)
        return user, token

    def current_user(self, session: Session, token: Optional[str]) -> Optional[User]:
        """Return the user bound to token, or None. Never mutates state."""
        key = self.store.resolve(token)
        if key is None:
            return None
        return self.from_session_key(session, key)

    def logout(self, token: Optional[str]) -> bool:
        revoked = self.store.revoke(token)
        if revoked:
            logger.info("Session ended")
        return revoked
