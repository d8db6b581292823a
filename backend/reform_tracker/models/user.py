"""User (principal) model for authorization."""
from __future__ import annotations

from sqlalchemy import JSON, Boolean, String, text
from sqlalchemy.orm import Mapped, mapped_column

from reform_tracker.database import Base
from reform_tracker.models.base import TimestampMixin


class User(TimestampMixin, Base):
    """A principal with a role, a clearance tier and per-user overrides.

    Users are never deleted, only deactivated.  The ``id`` is the stable
    subject identifier issued by the authentication layer.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(200), unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))
    role: Mapped[str] = mapped_column(
        String(50), nullable=False, default="member", server_default=text("'member'")
    )
    security_level: Mapped[str] = mapped_column(
        String(20), nullable=False, default="standard", server_default=text("'standard'")
    )
    # Sparse map of permission key -> bool
    permissions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    @property
    def display_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.email or self.id

    def __repr__(self) -> str:
        return f"<User {self.id!r} role={self.role!r}>"
