"""
levelbot.services.xp_store — Persistent Store Operations
=========================================================

Synchronous SQLAlchemy functions behind every durable read and write the
bot performs.  Call them from async code through
:func:`levelbot.database.engine.run_db`.

Results are returned as plain dataclass records rather than ORM objects so
they can cross the thread boundary and outlive their session.

Increments are expressed as SQL (``total_xp = total_xp + :delta``) so two
concurrent awards for the same member never lose an update.  The first
insert for a key goes through a SAVEPOINT; losing that race to another
writer falls back to the increment path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime

from sqlalchemy import Engine, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from levelbot.database.engine import get_session
from levelbot.database.models import (
    DailyXP,
    GuildSettings,
    UserLevel,
    VoiceSession,
    XPSource,
)

logger = logging.getLogger(__name__)

_DAILY_SOURCE_COLUMNS = {
    XPSource.MESSAGE: "message_xp",
    XPSource.REACTION: "reaction_xp",
    XPSource.VOICE: "voice_xp",
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class UserXPRecord:
    user_id: int
    guild_id: int
    total_xp: int
    level: int
    messages: int = 0
    reactions: int = 0
    voice_time: int = 0


@dataclass(frozen=True, slots=True)
class DailyXPRecord:
    user_id: int
    guild_id: int
    date: date
    total_xp: int
    message_xp: int
    voice_xp: int
    reaction_xp: int
    daily_cap: int
    tier_level: int
    tier_role_id: int | None


@dataclass(frozen=True, slots=True)
class VoiceSessionRecord:
    user_id: int
    guild_id: int
    channel_id: int
    join_time: datetime
    last_xp_time: datetime
    is_muted: bool
    is_deafened: bool


@dataclass(frozen=True, slots=True)
class GuildSettingsRecord:
    guild_id: int
    levelup_channel_id: int | None = None
    levelup_enabled: bool = True
    xp_log_channel_id: int | None = None
    xp_log_enabled: bool = False


@dataclass(frozen=True, slots=True)
class GuildDailySummary:
    active_users: int = 0
    total_xp: int = 0
    average_xp: float = 0.0
    highest_xp: int = 0
    message_xp: int = 0
    voice_xp: int = 0
    reaction_xp: int = 0
    users_at_cap: int = 0


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _user_record(row: UserLevel) -> UserXPRecord:
    return UserXPRecord(
        user_id=row.user_id,
        guild_id=row.guild_id,
        total_xp=row.total_xp or 0,
        level=row.level or 0,
        messages=row.messages or 0,
        reactions=row.reactions or 0,
        voice_time=row.voice_time or 0,
    )


def _daily_record(row: DailyXP) -> DailyXPRecord:
    return DailyXPRecord(
        user_id=row.user_id,
        guild_id=row.guild_id,
        date=row.date,
        total_xp=row.total_xp or 0,
        message_xp=row.message_xp or 0,
        voice_xp=row.voice_xp or 0,
        reaction_xp=row.reaction_xp or 0,
        daily_cap=row.daily_cap,
        tier_level=row.tier_level or 0,
        tier_role_id=row.tier_role_id,
    )


def _voice_record(row: VoiceSession) -> VoiceSessionRecord:
    return VoiceSessionRecord(
        user_id=row.user_id,
        guild_id=row.guild_id,
        channel_id=row.channel_id,
        join_time=as_utc(row.join_time),
        last_xp_time=as_utc(row.last_xp_time),
        is_muted=bool(row.is_muted),
        is_deafened=bool(row.is_deafened),
    )


def _insert_or_increment(session: Session, new_row, increment) -> None:
    """Run *increment*; if it matched nothing, insert *new_row* instead.

    A concurrent writer may insert the same key between the two steps; the
    SAVEPOINT absorbs the resulting IntegrityError and the increment is
    replayed against the row that writer created.
    """
    if session.execute(increment).rowcount:
        return
    try:
        with session.begin_nested():
            session.add(new_row)
            session.flush()
    except IntegrityError:
        session.execute(increment)


# ---------------------------------------------------------------------------
# Lifetime XP
# ---------------------------------------------------------------------------
def get_user_xp(engine: Engine, user_id: int, guild_id: int) -> UserXPRecord | None:
    with Session(engine) as session:
        row = session.get(UserLevel, (user_id, guild_id))
        return _user_record(row) if row else None


def update_user_xp(
    engine: Engine,
    user_id: int,
    guild_id: int,
    delta: int,
    source: XPSource,
    *,
    voice_minutes: int = 0,
) -> UserXPRecord:
    """Add *delta* XP and bump the activity counter for *source*.

    Message and reaction awards count one each; voice awards add
    *voice_minutes* to ``voice_time``.  Returns the updated record.
    """
    source = XPSource(source)
    counters = {
        XPSource.MESSAGE: {"messages": UserLevel.messages + 1},
        XPSource.REACTION: {"reactions": UserLevel.reactions + 1},
        XPSource.VOICE: {"voice_time": UserLevel.voice_time + voice_minutes},
    }[source]

    increment = (
        update(UserLevel)
        .where(UserLevel.user_id == user_id, UserLevel.guild_id == guild_id)
        .values(total_xp=UserLevel.total_xp + delta, **counters)
    )
    new_row = UserLevel(
        user_id=user_id,
        guild_id=guild_id,
        total_xp=delta,
        level=0,
        messages=1 if source is XPSource.MESSAGE else 0,
        reactions=1 if source is XPSource.REACTION else 0,
        voice_time=voice_minutes if source is XPSource.VOICE else 0,
    )

    with get_session(engine) as session:
        _insert_or_increment(session, new_row, increment)
        row = session.get(UserLevel, (user_id, guild_id), populate_existing=True)
        return _user_record(row)


def update_user_level(engine: Engine, user_id: int, guild_id: int, level: int) -> bool:
    """Raise the stored level to *level*.  Never lowers it.

    Returns ``True`` if a row was changed.
    """
    with get_session(engine) as session:
        result = session.execute(
            update(UserLevel)
            .where(
                UserLevel.user_id == user_id,
                UserLevel.guild_id == guild_id,
                UserLevel.level < level,
            )
            .values(level=level)
        )
        return bool(result.rowcount)


def get_leaderboard(
    engine: Engine, guild_id: int, limit: int = 50, offset: int = 0
) -> list[UserXPRecord]:
    """Members with any XP, highest first."""
    with Session(engine) as session:
        rows = session.scalars(
            select(UserLevel)
            .where(UserLevel.guild_id == guild_id, UserLevel.total_xp > 0)
            .order_by(UserLevel.total_xp.desc(), UserLevel.user_id)
            .limit(limit)
            .offset(offset)
        ).all()
        return [_user_record(r) for r in rows]


def get_user_rank(engine: Engine, user_id: int, guild_id: int) -> int | None:
    """1-based rank by total XP, or ``None`` if the member has no row."""
    with Session(engine) as session:
        total = session.scalar(
            select(UserLevel.total_xp).where(
                UserLevel.user_id == user_id, UserLevel.guild_id == guild_id
            )
        )
        if total is None:
            return None
        ahead = session.scalar(
            select(func.count())
            .select_from(UserLevel)
            .where(UserLevel.guild_id == guild_id, UserLevel.total_xp > total)
        )
        return int(ahead or 0) + 1


def remove_users(engine: Engine, guild_id: int, user_ids: list[int]) -> int:
    """Delete every row held for members who left *guild_id*.

    Lifetime XP, daily accruals and any open voice session go in one
    transaction.  Returns the number of lifetime rows removed.
    """
    if not user_ids:
        return 0
    with get_session(engine) as session:
        for model in (DailyXP, VoiceSession):
            session.execute(
                delete(model).where(model.guild_id == guild_id, model.user_id.in_(user_ids))
            )
        result = session.execute(
            delete(UserLevel).where(
                UserLevel.guild_id == guild_id, UserLevel.user_id.in_(user_ids)
            )
        )
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Daily XP
# ---------------------------------------------------------------------------
def get_daily_xp(engine: Engine, user_id: int, guild_id: int, day: date) -> DailyXPRecord | None:
    with Session(engine) as session:
        row = session.get(DailyXP, (user_id, guild_id, day))
        return _daily_record(row) if row else None


def add_daily_xp(
    engine: Engine,
    user_id: int,
    guild_id: int,
    day: date,
    amount: int,
    source: XPSource,
    *,
    daily_cap: int,
    tier_level: int = 0,
    tier_role_id: int | None = None,
) -> int:
    """Add *amount* to the member's total and *source* sub-total for *day*.

    The cap and tier snapshot columns are overwritten with the values given
    so the row reflects the member's cap at the latest accrual.  Returns the
    new day total.
    """
    source = XPSource(source)
    column = _DAILY_SOURCE_COLUMNS[source]

    increment = (
        update(DailyXP)
        .where(
            DailyXP.user_id == user_id,
            DailyXP.guild_id == guild_id,
            DailyXP.date == day,
        )
        .values(
            {
                DailyXP.total_xp: DailyXP.total_xp + amount,
                getattr(DailyXP, column): getattr(DailyXP, column) + amount,
                DailyXP.daily_cap: daily_cap,
                DailyXP.tier_level: tier_level,
                DailyXP.tier_role_id: tier_role_id,
            }
        )
    )
    new_row = DailyXP(
        user_id=user_id,
        guild_id=guild_id,
        date=day,
        total_xp=amount,
        message_xp=0,
        voice_xp=0,
        reaction_xp=0,
        daily_cap=daily_cap,
        tier_level=tier_level,
        tier_role_id=tier_role_id,
    )
    setattr(new_row, column, amount)

    with get_session(engine) as session:
        _insert_or_increment(session, new_row, increment)
        total = session.scalar(
            select(DailyXP.total_xp).where(
                DailyXP.user_id == user_id,
                DailyXP.guild_id == guild_id,
                DailyXP.date == day,
            )
        )
        return int(total or 0)


def get_guild_daily_summary(engine: Engine, guild_id: int, day: date) -> GuildDailySummary:
    """Aggregate one guild's accrual for *day*."""
    with Session(engine) as session:
        row = session.execute(
            select(
                func.count(),
                func.coalesce(func.sum(DailyXP.total_xp), 0),
                func.coalesce(func.avg(DailyXP.total_xp), 0),
                func.coalesce(func.max(DailyXP.total_xp), 0),
                func.coalesce(func.sum(DailyXP.message_xp), 0),
                func.coalesce(func.sum(DailyXP.voice_xp), 0),
                func.coalesce(func.sum(DailyXP.reaction_xp), 0),
                func.coalesce(
                    func.sum(case((DailyXP.total_xp >= DailyXP.daily_cap, 1), else_=0)), 0
                ),
            ).where(DailyXP.guild_id == guild_id, DailyXP.date == day)
        ).one()

    return GuildDailySummary(
        active_users=int(row[0]),
        total_xp=int(row[1]),
        average_xp=round(float(row[2]), 1),
        highest_xp=int(row[3]),
        message_xp=int(row[4]),
        voice_xp=int(row[5]),
        reaction_xp=int(row[6]),
        users_at_cap=int(row[7]),
    )


def get_users_at_cap(engine: Engine, guild_id: int, day: date) -> list[DailyXPRecord]:
    with Session(engine) as session:
        rows = session.scalars(
            select(DailyXP)
            .where(
                DailyXP.guild_id == guild_id,
                DailyXP.date == day,
                DailyXP.total_xp >= DailyXP.daily_cap,
            )
            .order_by(DailyXP.total_xp.desc())
        ).all()
        return [_daily_record(r) for r in rows]


def delete_daily_xp_for_day(engine: Engine, day: date, guild_id: int | None = None) -> int:
    """Drop every accrual row for *day*, optionally scoped to one guild."""
    stmt = delete(DailyXP).where(DailyXP.date == day)
    if guild_id is not None:
        stmt = stmt.where(DailyXP.guild_id == guild_id)
    with get_session(engine) as session:
        return session.execute(stmt).rowcount or 0


def cleanup_old_daily_xp(engine: Engine, before: date) -> int:
    """Delete accrual rows dated strictly before *before*."""
    with get_session(engine) as session:
        deleted = session.execute(delete(DailyXP).where(DailyXP.date < before)).rowcount or 0
    if deleted:
        logger.info("Pruned %d daily XP rows older than %s", deleted, before.isoformat())
    return deleted


# ---------------------------------------------------------------------------
# Voice sessions
# ---------------------------------------------------------------------------
def get_voice_session(engine: Engine, user_id: int, guild_id: int) -> VoiceSessionRecord | None:
    with Session(engine) as session:
        row = session.get(VoiceSession, (user_id, guild_id))
        return _voice_record(row) if row else None


def get_voice_sessions(engine: Engine, guild_id: int | None = None) -> list[VoiceSessionRecord]:
    """All open sessions, or just those of *guild_id*."""
    stmt = select(VoiceSession)
    if guild_id is not None:
        stmt = stmt.where(VoiceSession.guild_id == guild_id)
    with Session(engine) as session:
        return [_voice_record(r) for r in session.scalars(stmt).all()]


def set_voice_session(
    engine: Engine,
    user_id: int,
    guild_id: int,
    channel_id: int,
    now: datetime,
    *,
    is_muted: bool = False,
    is_deafened: bool = False,
    last_xp_time: datetime | None = None,
) -> VoiceSessionRecord:
    """Open (or replace) the member's session in *channel_id*.

    ``last_xp_time`` defaults to *now* so a fresh join waits one full
    cooldown before its first voice award.
    """
    with get_session(engine) as session:
        row = session.get(VoiceSession, (user_id, guild_id))
        if row is None:
            row = VoiceSession(user_id=user_id, guild_id=guild_id)
            session.add(row)
        row.channel_id = channel_id
        row.join_time = now
        row.last_xp_time = last_xp_time or now
        row.is_muted = is_muted
        row.is_deafened = is_deafened
        session.flush()
        return _voice_record(row)


def update_voice_flags(
    engine: Engine, user_id: int, guild_id: int, *, is_muted: bool, is_deafened: bool
) -> bool:
    """Update mute/deafen in place.  Returns ``False`` if there is no session."""
    with get_session(engine) as session:
        result = session.execute(
            update(VoiceSession)
            .where(VoiceSession.user_id == user_id, VoiceSession.guild_id == guild_id)
            .values(is_muted=is_muted, is_deafened=is_deafened)
        )
        return bool(result.rowcount)


def touch_voice_session(engine: Engine, user_id: int, guild_id: int, when: datetime) -> bool:
    """Record a voice award at *when*."""
    with get_session(engine) as session:
        result = session.execute(
            update(VoiceSession)
            .where(VoiceSession.user_id == user_id, VoiceSession.guild_id == guild_id)
            .values(last_xp_time=when)
        )
        return bool(result.rowcount)


def delete_voice_session(engine: Engine, user_id: int, guild_id: int) -> bool:
    with get_session(engine) as session:
        result = session.execute(
            delete(VoiceSession).where(
                VoiceSession.user_id == user_id, VoiceSession.guild_id == guild_id
            )
        )
        return bool(result.rowcount)


# ---------------------------------------------------------------------------
# Guild settings
# ---------------------------------------------------------------------------
def get_guild_settings(engine: Engine, guild_id: int) -> GuildSettingsRecord | None:
    with Session(engine) as session:
        row = session.get(GuildSettings, guild_id)
        if row is None:
            return None
        return GuildSettingsRecord(
            guild_id=row.guild_id,
            levelup_channel_id=row.levelup_channel_id,
            levelup_enabled=bool(row.levelup_enabled),
            xp_log_channel_id=row.xp_log_channel_id,
            xp_log_enabled=bool(row.xp_log_enabled),
        )


_GUILD_SETTING_FIELDS = frozenset(
    {"levelup_channel_id", "levelup_enabled", "xp_log_channel_id", "xp_log_enabled"}
)


def save_guild_settings(engine: Engine, guild_id: int, **changes) -> GuildSettingsRecord:
    """Create or update the guild's settings row with *changes*.

    Raises
    ------
    ValueError
        If *changes* names a column that is not a guild setting.
    """
    unknown = set(changes) - _GUILD_SETTING_FIELDS
    if unknown:
        raise ValueError(f"Unknown guild setting(s): {', '.join(sorted(unknown))}")

    with get_session(engine) as session:
        row = session.get(GuildSettings, guild_id)
        if row is None:
            row = GuildSettings(guild_id=guild_id, levelup_enabled=True, xp_log_enabled=False)
            session.add(row)
        for name, value in changes.items():
            setattr(row, name, value)
        session.flush()
        return GuildSettingsRecord(
            guild_id=row.guild_id,
            levelup_channel_id=row.levelup_channel_id,
            levelup_enabled=bool(row.levelup_enabled),
            xp_log_channel_id=row.xp_log_channel_id,
            xp_log_enabled=bool(row.xp_log_enabled),
        )
