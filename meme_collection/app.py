from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from contextlib import asynccontextmanager
import secrets
import time
from typing import Any, Dict, Optional
import logging

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from sqlmodel import Session

from .auth import GoogleOAuthClient, OAuthLoginError, StateSigner
from .auth_utils import optional_user, require_user, session_token
from .config import Settings, configure_logging, load_settings
from .constants import (
    DEFAULT_PAGE,
    MEME_CATEGORIES,
    OAUTH_STATE_COOKIE,
    OAUTH_STATE_TTL_SECONDS,
    is_valid_category,
    is_valid_url,
    normalize_caption,
)
from .db import init_db
from .db_helpers import get_db_session
from .errors import envelope, register_exception_handlers, unhandled_error_handler
from .memes import (
    create_meme,
    delete_meme,
    get_owned_meme,
    list_memes,
    meme_to_dict,
    random_meme,
    toggle_like,
    update_meme,
    user_to_dict,
)
from .models import User
from .sessions import SessionAuthenticator, SessionStore

logger = logging.getLogger(__name__)


def _check_category(v: str) -> str:
    if not is_valid_category(v):
        raise ValueError(f"must be one of {', '.join(MEME_CATEGORIES)}")
    return v


class CreateMemeRequest(BaseModel):
    """Request body for creating a meme."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    caption: str
    image_url: str
    category: str

    @field_validator("caption")
    @classmethod
    def _caption(cls, v):
        return normalize_caption(v)

    @field_validator("image_url")
    @classmethod
    def _image_url(cls, v):
        v = v.strip()
        if not is_valid_url(v):
            raise ValueError("must be an absolute http(s) URL")
        return v

    @field_validator("category")
    @classmethod
    def _category(cls, v):
        return _check_category(v)


class UpdateMemeRequest(BaseModel):
    """Request body for a partial meme update."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    caption: Optional[str] = None
    category: Optional[str] = None

    @field_validator("caption")
    @classmethod
    def _caption(cls, v):
        return None if v is None else normalize_caption(v)

    @field_validator("category")
    @classmethod
    def _category(cls, v):
        return None if v is None else _check_category(v)


def build_authenticator(settings: Settings, engine, oauth_client=None) -> SessionAuthenticator:
    """Wire the login components once per process."""
    secret = settings.cookie_key
    if not secret:
        logger.warning("COOKIE_KEY not set; using an ephemeral key, pending logins will not survive a restart")
        secret = secrets.token_urlsafe(32)
    store = SessionStore(engine, settings.session_max_age_seconds)
    return SessionAuthenticator(
        oauth_client or GoogleOAuthClient(settings),
        store,
        StateSigner(secret, OAUTH_STATE_TTL_SECONDS),
    )


def create_app(settings: Optional[Settings] = None, engine=None, oauth_client=None) -> FastAPI:
    """Build the API application.

    Anything not injected is created from the environment at startup.
    """
    injected_settings = settings is not None
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        """Manage application lifecycle (startup and shutdown events)."""
        if not injected_settings:
            configure_logging(settings)
        logger.info("Starting meme_collection API (frontend: %s)", settings.frontend_url)

        owns_engine = engine is None
        app_instance.state.engine = engine if engine is not None else init_db(settings.database_url)
        app_instance.state.authenticator = build_authenticator(settings, app_instance.state.engine, oauth_client)

        try:
            app_instance.state.authenticator.store.purge_expired()
        except Exception:
            logger.exception("Failed to purge expired sessions, continuing")

        yield

        logger.info("Shutting down meme_collection API")
        if owns_engine:
            app_instance.state.engine.dispose()

    app = FastAPI(title="meme_collection", description="Meme collection manager", version="0.0.1", lifespan=lifespan)
    app.state.settings = settings

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            response = await unhandled_error_handler(request, exc)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed)
        return response

    # Outermost middleware: also covers error responses from log_requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    _register_routes(app, settings)
    return app


def _failure_redirect(settings: Settings) -> RedirectResponse:
    response = RedirectResponse(settings.login_failure_url, status_code=302)
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/auth")
    return response


def _register_routes(app: FastAPI, settings: Settings) -> None:

    @app.get("/health", tags=["health"])
    def health() -> Dict[str, Any]:
        return envelope({"status": "ok"})

    @app.get("/auth/google", tags=["auth"])
    def login(request: Request):
        """Redirect to the Google consent screen."""
        try:
            url, correlation = request.app.state.authenticator.begin_login()
        except OAuthLoginError as exc:
            logger.error("Cannot start Google login: %s", exc)
            return _failure_redirect(settings)

        response = RedirectResponse(url, status_code=302)
        response.set_cookie(
            key=OAUTH_STATE_COOKIE,
            value=correlation,
            max_age=OAUTH_STATE_TTL_SECONDS,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            path="/auth",
        )
        return response

    @app.get("/auth/google/callback", tags=["auth"])
    async def login_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        session: Session = Depends(get_db_session),
    ):
        """Finish the Google login and set the session cookie."""
        if error:
            logger.warning("Google login denied: %s", error)
            return _failure_redirect(settings)

        authenticator = request.app.state.authenticator
        try:
            _user, token = await authenticator.complete_login(
                session, code, state, request.cookies.get(OAUTH_STATE_COOKIE)
            )
        except OAuthLoginError as exc:
            logger.warning("Google login failed: %s", exc)
            return _failure_redirect(settings)

        response = RedirectResponse(settings.login_success_url, status_code=302)
        response.delete_cookie(OAUTH_STATE_COOKIE, path="/auth")
        response.set_cookie(
            key=settings.session_cookie_name,
            value=token,
            max_age=settings.session_max_age_seconds,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            path="/",
        )
        return response

    @app.get("/auth/current_user", tags=["auth"])
    def current_user(user: Optional[User] = Depends(optional_user)):
        """Return the logged-in user, or null data when anonymous."""
        return envelope(user_to_dict(user) if user is not None else None)

    @app.get("/auth/logout", tags=["auth"])
    def logout(request: Request):
        request.app.state.authenticator.logout(session_token(request))
        response = RedirectResponse(settings.logout_redirect_url, status_code=302)
        response.delete_cookie(settings.session_cookie_name, path="/")
        return response

    @app.post("/api/memes", status_code=201, tags=["memes"])
    def create(body: CreateMemeRequest, user: User = Depends(require_user),
               session: Session = Depends(get_db_session)):
        meme = create_meme(session, user, body.caption, body.image_url, body.category)
        return envelope(meme_to_dict(session, meme))

    @app.get("/api/memes", tags=["memes"])
    def list_(
        page: int = Query(DEFAULT_PAGE, ge=1),
        limit: Optional[int] = Query(None, ge=1),
        category: Optional[str] = None,
        search: Optional[str] = None,
        user: User = Depends(require_user),
        session: Session = Depends(get_db_session),
    ):
        """List the caller's memes with optional category filter and caption search."""
        result = list_memes(
            session,
            user,
            page=page,
            limit=limit or settings.default_page_size,
            category=category or None,
            search=search,
            max_limit=settings.max_page_size,
        )
        return envelope(result)

    # Declared before /{meme_id} so "random" is not taken as an id
    @app.get("/api/memes/random", tags=["memes"])
    def random_(user: User = Depends(require_user), session: Session = Depends(get_db_session)):
        return envelope(meme_to_dict(session, random_meme(session, user)))

    @app.get("/api/memes/{meme_id}", tags=["memes"])
    def get(meme_id: int, user: User = Depends(require_user), session: Session = Depends(get_db_session)):
        return envelope(meme_to_dict(session, get_owned_meme(session, user, meme_id)))

    @app.put("/api/memes/{meme_id}", tags=["memes"])
    def update(meme_id: int, body: UpdateMemeRequest, user: User = Depends(require_user),
               session: Session = Depends(get_db_session)):
        meme = update_meme(session, user, meme_id, caption=body.caption, category=body.category)
        return envelope(meme_to_dict(session, meme))

    @app.delete("/api/memes/{meme_id}", tags=["memes"])
    def delete(meme_id: int, user: User = Depends(require_user), session: Session = Depends(get_db_session)):
        delete_meme(session, user, meme_id)
        return envelope({"id": meme_id, "deleted": True})

    @app.post("/api/memes/{meme_id}/toggle-like", tags=["memes"])
    def like(meme_id: int, user: User = Depends(require_user), session: Session = Depends(get_db_session)):
        return envelope(toggle_like(session, user, meme_id))
