"""Reform task model (representative guarded resource)."""
from __future__ import annotations

import datetime

from sqlalchemy import Date, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from reform_tracker.database import Base
from reform_tracker.models.base import TimestampMixin


class Task(TimestampMixin, Base):
    """A reform task tracked by a team."""
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default=text("'pending'")
    )
    priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default="medium", server_default=text("'medium'")
    )
    assigned_to: Mapped[str | None] = mapped_column(String(64))
    created_by: Mapped[str | None] = mapped_column(String(64))
    due_date: Mapped[datetime.date | None] = mapped_column(Date)

    def __repr__(self) -> str:
        return f"<Task {self.id} {self.title!r} status={self.status!r}>"
