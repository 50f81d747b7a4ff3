import datetime
import os
from typing import Optional

from sqlmodel import SQLModel, Session, create_engine, select
from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import StaticPool
import logging

logger = logging.getLogger(__name__)

from .models import User


def init_db(database_url: str = "sqlite:////data/memes.db"):
    """Create and return SQLAlchemy engine. Creates all tables on startup."""
    is_sqlite = database_url.startswith("sqlite")
    try:
        if database_url.startswith("sqlite:///"):
            file_path = database_url[len("sqlite:///"):]
            dirpath = os.path.dirname(file_path)
            if file_path and file_path != ":memory:" and dirpath and not os.path.exists(dirpath):
                os.makedirs(dirpath, exist_ok=True)
    except Exception as e:
        logger.debug("Unable to create database directory: %s", e)

    kwargs = {"echo": False}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every thread sees the same in-memory DB
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)

    if is_sqlite:
        try:
            with engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
        except Exception as e:
            logger.debug("Unable to set SQLite pragmas: %s", e)

    SQLModel.metadata.create_all(engine)
    logger.info("Database ready (%s)", engine.dialect.name)
    return engine


def _insert_for(session: Session):
    """Return the dialect-specific insert() that supports ON CONFLICT."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert not supported for dialect {name}")


def upsert_user(session: Session, google_id: str, display_name: str, email: str,
                profile_image: Optional[str] = None) -> User:
    """Insert or refresh the user bound to google_id in one statement.

    The profile snapshot is refreshed on every login. Commits and returns the
    stored row.
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    insert = _insert_for(session)
    stmt = insert(User).values(
        google_id=google_id,
        display_name=display_name,
        email=email,
        profile_image=profile_image,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[User.google_id],
        set_={
            "display_name": stmt.excluded.display_name,
            "email": stmt.excluded.email,
            "profile_image": stmt.excluded.profile_image,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.connection().execute(stmt)
    session.commit()

    user = get_user_by_google_id(session, google_id)
    session.refresh(user)
    logger.debug("Upserted user id=%s google_id=%s", user.id, google_id)
    return user


def get_user(session: Session, user_id: int) -> Optional[User]:
    """Get a single user by primary key."""
    return session.get(User, user_id)


def get_user_by_google_id(session: Session, google_id: str) -> Optional[User]:
    """Get a single user by Google subject identifier."""
    return session.exec(select(User).where(User.google_id == google_id)).first()
