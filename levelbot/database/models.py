"""
levelbot.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- user_levels     — Lifetime XP, level and activity counters per (user, guild)
- daily_xp        — Per business-day XP accrual with per-source sub-totals
- voice_sessions  — Who is in voice right now and when they last earned XP
- guild_settings  — Per-guild routing for level-up and XP log messages
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all levelbot ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class XPSource(enum.StrEnum):
    """Activity kinds that can earn XP."""
    MESSAGE = "message"
    REACTION = "reaction"
    VOICE = "voice"


# ---------------------------------------------------------------------------
# UserLevel: one row per member per guild
# ---------------------------------------------------------------------------
class UserLevel(Base):
    __tablename__ = "user_levels"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    total_xp: Mapped[int] = mapped_column(BigInteger, default=0)
    level: Mapped[int] = mapped_column(Integer, default=0)
    messages: Mapped[int] = mapped_column(Integer, default=0)
    reactions: Mapped[int] = mapped_column(Integer, default=0)
    voice_time: Mapped[int] = mapped_column(Integer, default=0)  # minutes
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_user_levels_guild_xp", "guild_id", "total_xp"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserLevel user={self.user_id} guild={self.guild_id} "
            f"xp={self.total_xp} lvl={self.level}>"
        )


# ---------------------------------------------------------------------------
# DailyXP: accrual for one business day
# ---------------------------------------------------------------------------
class DailyXP(Base):
    """XP earned on one business day.

    ``daily_cap`` and the tier columns snapshot the member's cap at the
    time of the most recent accrual, so historical rows keep their context
    after a tier change.
    """

    __tablename__ = "daily_xp"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    date: Mapped[date] = mapped_column(Date, primary_key=True)
    total_xp: Mapped[int] = mapped_column(Integer, default=0)
    message_xp: Mapped[int] = mapped_column(Integer, default=0)
    voice_xp: Mapped[int] = mapped_column(Integer, default=0)
    reaction_xp: Mapped[int] = mapped_column(Integer, default=0)
    daily_cap: Mapped[int] = mapped_column(Integer, default=15000)
    tier_level: Mapped[int] = mapped_column(Integer, default=0)
    tier_role_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_daily_xp_guild_date", "guild_id", "date"),
        Index("ix_daily_xp_date", "date"),
    )

    def __repr__(self) -> str:
        return (
            f"<DailyXP user={self.user_id} guild={self.guild_id} "
            f"date={self.date} xp={self.total_xp}/{self.daily_cap}>"
        )


# ---------------------------------------------------------------------------
# VoiceSession: live voice presence
# ---------------------------------------------------------------------------
class VoiceSession(Base):
    __tablename__ = "voice_sessions"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    channel_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    join_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_xp_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deafened: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_voice_sessions_guild", "guild_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<VoiceSession user={self.user_id} guild={self.guild_id} "
            f"channel={self.channel_id}>"
        )


# ---------------------------------------------------------------------------
# GuildSettings: per-guild notification routing
# ---------------------------------------------------------------------------
class GuildSettings(Base):
    __tablename__ = "guild_settings"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    levelup_channel_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    levelup_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    xp_log_channel_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    xp_log_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<GuildSettings guild={self.guild_id}>"
