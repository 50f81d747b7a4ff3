import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    google_id: str = Field(index=True, unique=True)
    display_name: str
    email: str = Field(index=True, unique=True)
    profile_image: Optional[str] = None
    created_at: datetime.datetime = Field(default_factory=_utcnow)
    updated_at: datetime.datetime = Field(default_factory=_utcnow)


class Meme(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    caption: str
    image_url: str
    category: str = Field(index=True)
    created_at: datetime.datetime = Field(default_factory=_utcnow, index=True)
    updated_at: datetime.datetime = Field(default_factory=_utcnow)


class MemeLike(SQLModel, table=True):
    """One row per (meme, user) pair in a meme's like-set.

    The composite primary key keeps the set free of duplicates.
    """
    meme_id: int = Field(foreign_key="meme.id", primary_key=True)
    user_id: int = Field(foreign_key="user.id", primary_key=True)
    created_at: datetime.datetime = Field(default_factory=_utcnow)


class UserSession(SQLModel, table=True):
    """Server-side session record.

    Only the SHA-256 of the cookie value is stored.
    """
    token_hash: str = Field(primary_key=True)
    session_key: str = Field(index=True)
    created_at: datetime.datetime = Field(default_factory=_utcnow)
    expires_at: datetime.datetime = Field(index=True)
