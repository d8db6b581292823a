"""Sign-in sessions, recorded by the authentication layer."""
from __future__ import annotations

import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from reform_tracker.database import Base
from reform_tracker.models.base import utcnow


class UserSession(Base):
    """One sign-in.  Tokens carrying its ``session_id`` as ``sid`` stop
    authenticating once it is ended or expired."""
    __tablename__ = "user_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False, index=True
    )
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    login_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    logout_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "loginAt": self.login_at.isoformat() if self.login_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "logoutAt": self.logout_at.isoformat() if self.logout_at else None,
            "isActive": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<UserSession {self.session_id!r} user={self.user_id!r}>"
