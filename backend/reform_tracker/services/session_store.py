"""Sign-in session bookkeeping.

The authentication layer calls ``start_session`` at sign-in and puts the
returned ``session_id`` into the token as the ``sid`` claim.  Administrators
can list a user's live sessions and end one; a token whose session has ended
or expired no longer authenticates.
"""

from __future__ import annotations

import datetime
import logging
import uuid

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from reform_tracker.models.base import utcnow
from reform_tracker.models.session import UserSession

logger = logging.getLogger(__name__)


def _live():
    now = utcnow()
    return (
        UserSession.is_active.is_(True),
        or_(UserSession.expires_at.is_(None), UserSession.expires_at > now),
    )


async def start_session(
    db: AsyncSession,
    user_id: str,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    ttl: datetime.timedelta | None = None,
) -> UserSession:
    session = UserSession(
        session_id=uuid.uuid4().hex,
        user_id=user_id,
        ip_address=ip_address,
        user_agent=user_agent,
        expires_at=utcnow() + ttl if ttl else None,
    )
    db.add(session)
    await db.commit()
    return session


async def get_session(db: AsyncSession, session_id: str) -> UserSession | None:
    result = await db.execute(select(UserSession).where(UserSession.session_id == session_id))
    return result.scalar_one_or_none()


async def list_active_sessions(db: AsyncSession, user_id: str) -> list[UserSession]:
    """Live sessions for *user_id*, most recent sign-in first."""
    stmt = (
        select(UserSession)
        .where(UserSession.user_id == user_id, *_live())
        .order_by(UserSession.login_at.desc(), UserSession.id.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def is_session_active(db: AsyncSession, session_id: str, user_id: str) -> bool:
    """True if *session_id* belongs to *user_id* and is neither ended nor expired."""
    stmt = select(UserSession.id).where(
        UserSession.session_id == session_id,
        UserSession.user_id == user_id,
        *_live(),
    )
    return (await db.execute(stmt)).first() is not None


async def end_session(db: AsyncSession, session: UserSession) -> UserSession:
    session.is_active = False
    session.logout_at = utcnow()
    await db.commit()
    logger.info("Ended session %s for user %s", session.session_id, session.user_id)
    return session
