from __future__ import annotations

from sqlalchemy import Float, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class SessionStateRow(Base):
    __tablename__ = "session_state"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    state: Mapped[str] = mapped_column(Text, default="{}")  # JSON-encoded SessionState
    created_at: Mapped[str] = mapped_column(String(40), default="")
    updated_at: Mapped[str] = mapped_column(String(40), default="")


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    message: Mapped[str] = mapped_column(Text, default="{}")  # JSON-encoded ChatMessage
    created_at: Mapped[str] = mapped_column(String(40), default="")


class ScheduledTask(Base):
    __tablename__ = "scheduled_tasks"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    description: Mapped[str] = mapped_column(Text, default="")
    cron: Mapped[str | None] = mapped_column(String(100), nullable=True)
    callback: Mapped[str] = mapped_column(String(100), default="executeTask")
    data: Mapped[str] = mapped_column(Text, default="{}")
    next_run_time: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[str] = mapped_column(String(40), default="")


class UserInfo(Base):
    __tablename__ = "user_info"

    user_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    api_key: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(300), default="")
    credits: Mapped[float] = mapped_column(Float, default=0.0)
    payment_method: Mapped[str] = mapped_column(String(50), default="credits")
    created_at: Mapped[str] = mapped_column(String(40), default="")
    updated_at: Mapped[str] = mapped_column(String(40), default="")
