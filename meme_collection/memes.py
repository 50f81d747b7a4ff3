"""Meme collection operations.

All functions take an open SQLModel session and the calling user. Ownership
is checked through `auth_utils.authorize`; a meme the caller does not own is
reported exactly like a meme that does not exist.
"""
import datetime
import logging
import math
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, desc, func, insert
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from .auth_utils import authorize
from .constants import DEFAULT_PAGE, MEME_CATEGORIES, is_valid_category
from .errors import InvalidInputError, NoMemesFoundError, NotFoundError
from .models import Meme, MemeLike, User

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite hands back naive values; everything is stored in UTC
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.isoformat()


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "googleId": user.google_id,
        "displayName": user.display_name,
        "email": user.email,
        "profileImage": user.profile_image,
        "createdAt": _iso(user.created_at),
    }


def liked_by(session: Session, meme_id: int) -> List[int]:
    stmt = select(MemeLike.user_id).where(MemeLike.meme_id == meme_id).order_by(MemeLike.created_at)
    return list(session.exec(stmt).all())


def likes_for(session: Session, meme_ids: List[int]) -> Dict[int, List[int]]:
    """Like-sets of several memes in one query, keyed by meme id."""
    grouped: Dict[int, List[int]] = {meme_id: [] for meme_id in meme_ids}
    if not meme_ids:
        return grouped
    stmt = (
        select(MemeLike.meme_id, MemeLike.user_id)
        .where(col(MemeLike.meme_id).in_(meme_ids))
        .order_by(MemeLike.created_at)
    )
    for meme_id, user_id in session.exec(stmt).all():
        grouped[meme_id].append(user_id)
    return grouped


def meme_to_dict(session: Session, meme: Meme, likes: Optional[List[int]] = None) -> Dict[str, Any]:
    if likes is None:
        likes = liked_by(session, meme.id)
    return {
        "id": meme.id,
        "owner": meme.owner_id,
        "caption": meme.caption,
        "imageUrl": meme.image_url,
        "category": meme.category,
        "likes": likes,
        "likeCount": len(likes),
        "createdAt": _iso(meme.created_at),
        "updatedAt": _iso(meme.updated_at),
    }


def create_meme(session: Session, user: User, caption: str, image_url: str, category: str) -> Meme:
    """Persist a new meme owned by user. Inputs must already be validated."""
    if not is_valid_category(category):
        raise InvalidInputError(f"category: must be one of {', '.join(MEME_CATEGORIES)}")
    meme = Meme(owner_id=user.id, caption=caption, image_url=image_url, category=category)
    session.add(meme)
    session.commit()
    session.refresh(meme)
    logger.info("User %s created meme %s", user.id, meme.id)
    return meme


def list_memes(session: Session, user: User, page: int = DEFAULT_PAGE, limit: int = 10,
               category: Optional[str] = None, search: Optional[str] = None,
               max_limit: int = 100) -> Dict[str, Any]:
    """Return one page of the caller's memes, newest first, with pagination metadata."""
    if page < 1:
        raise InvalidInputError("page: must be >= 1")
    if limit < 1:
        raise InvalidInputError("limit: must be >= 1")
    limit = min(limit, max_limit)
    if category is not None and not is_valid_category(category):
        raise InvalidInputError(f"category: must be one of {', '.join(MEME_CATEGORIES)}")

    conditions = [Meme.owner_id == user.id]
    if category is not None:
        conditions.append(Meme.category == category)
    if search:
        conditions.append(col(Meme.caption).icontains(search, autoescape=True))

    total = session.exec(select(func.count()).select_from(Meme).where(*conditions)).one()
    q = (
        select(Meme)
        .where(*conditions)
        .order_by(desc(Meme.created_at), desc(Meme.id))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = session.exec(q).all()
    likes = likes_for(session, [r.id for r in rows])
    logger.debug("list_memes user=%s page=%s limit=%s -> %s/%s", user.id, page, limit, len(rows), total)

    return {
        "items": [meme_to_dict(session, r, likes[r.id]) for r in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "totalItems": total,
            "totalPages": math.ceil(total / limit),
        },
    }


def get_owned_meme(session: Session, user: User, meme_id: int) -> Meme:
    meme = session.get(Meme, meme_id)
    if meme is None or not authorize(user, meme.owner_id):
        raise NotFoundError()
    return meme


def update_meme(session: Session, user: User, meme_id: int, caption: Optional[str] = None,
                category: Optional[str] = None) -> Meme:
    """Apply a partial update. updated_at moves only when a field changes."""
    meme = get_owned_meme(session, user, meme_id)
    if category is not None and not is_valid_category(category):
        raise InvalidInputError(f"category: must be one of {', '.join(MEME_CATEGORIES)}")

    changed = False
    if caption is not None and caption != meme.caption:
        meme.caption = caption
        changed = True
    if category is not None and category != meme.category:
        meme.category = category
        changed = True

    if changed:
        meme.updated_at = datetime.datetime.now(datetime.timezone.utc)
        session.add(meme)
        session.commit()
        session.refresh(meme)
        logger.info("User %s updated meme %s", user.id, meme.id)
    return meme


def delete_meme(session: Session, user: User, meme_id: int) -> None:
    meme = get_owned_meme(session, user, meme_id)
    session.connection().execute(delete(MemeLike).where(MemeLike.meme_id == meme.id))
    session.delete(meme)
    session.commit()
    logger.info("User %s deleted meme %s", user.id, meme_id)


def like_count(session: Session, meme_id: int) -> int:
    return session.exec(select(func.count()).select_from(MemeLike).where(MemeLike.meme_id == meme_id)).one()


def _meme_exists(session: Session, meme_id: int) -> bool:
    return session.exec(select(Meme.id).where(Meme.id == meme_id)).first() is not None


def toggle_like(session: Session, user: User, meme_id: int) -> Dict[str, Any]:
    """Flip the caller's membership in the meme's like-set.

    Each branch is a single statement against the like table, so two users
    toggling at once cannot overwrite each other.
    """
    if not _meme_exists(session, meme_id):
        raise NotFoundError()

    conn = session.connection()
    removed = conn.execute(
        delete(MemeLike).where(MemeLike.meme_id == meme_id, MemeLike.user_id == user.id)
    ).rowcount
    if removed:
        session.commit()
        liked = False
    else:
        try:
            conn.execute(insert(MemeLike).values(
                meme_id=meme_id,
                user_id=user.id,
                created_at=datetime.datetime.now(datetime.timezone.utc),
            ))
            session.commit()
        except IntegrityError:
            # Either a concurrent identical toggle inserted the row first,
            # or the meme was deleted in between
            session.rollback()
            if not _meme_exists(session, meme_id):
                raise NotFoundError()
        liked = True

    count = like_count(session, meme_id)
    logger.debug("User %s %s meme %s (count=%s)", user.id, "liked" if liked else "unliked", meme_id, count)
    return {"liked": liked, "likeCount": count}


def random_meme(session: Session, user: User) -> Meme:
    """Pick one of the caller's memes uniformly at random."""
    stmt = select(Meme).where(Meme.owner_id == user.id).order_by(func.random()).limit(1)
    meme = session.exec(stmt).first()
    if meme is None:
        raise NoMemesFoundError()
    return meme
