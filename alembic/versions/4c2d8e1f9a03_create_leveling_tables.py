"""Create leveling tables

Revision ID: 4c2d8e1f9a03
Revises:
Create Date: 2026-10-19 10:12:41.118604

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4c2d8e1f9a03'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create user_levels, daily_xp, voice_sessions and guild_settings."""

    # --- user_levels ---
    op.create_table(
        "user_levels",
        sa.Column("user_id", sa.BigInteger, primary_key=True),
        sa.Column("guild_id", sa.BigInteger, primary_key=True),
        sa.Column("total_xp", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("level", sa.Integer, nullable=False, server_default="0"),
        sa.Column("messages", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reactions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("voice_time", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_user_levels_guild_xp", "user_levels", ["guild_id", "total_xp"])

    # --- daily_xp ---
    op.create_table(
        "daily_xp",
        sa.Column("user_id", sa.BigInteger, primary_key=True),
        sa.Column("guild_id", sa.BigInteger, primary_key=True),
        sa.Column("date", sa.Date, primary_key=True),
        sa.Column("total_xp", sa.Integer, nullable=False, server_default="0"),
        sa.Column("message_xp", sa.Integer, nullable=False, server_default="0"),
        sa.Column("voice_xp", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reaction_xp", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_cap", sa.Integer, nullable=False, server_default="15000"),
        sa.Column("tier_level", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tier_role_id", sa.BigInteger, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_daily_xp_guild_date", "daily_xp", ["guild_id", "date"])
    op.create_index("ix_daily_xp_date", "daily_xp", ["date"])

    # --- voice_sessions ---
    op.create_table(
        "voice_sessions",
        sa.Column("user_id", sa.BigInteger, primary_key=True),
        sa.Column("guild_id", sa.BigInteger, primary_key=True),
        sa.Column("channel_id", sa.BigInteger, nullable=False),
        sa.Column("join_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_xp_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_muted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_deafened", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_voice_sessions_guild", "voice_sessions", ["guild_id"])

    # --- guild_settings ---
    op.create_table(
        "guild_settings",
        sa.Column("guild_id", sa.BigInteger, primary_key=True),
        sa.Column("levelup_channel_id", sa.BigInteger, nullable=True),
        sa.Column("levelup_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("xp_log_channel_id", sa.BigInteger, nullable=True),
        sa.Column("xp_log_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("guild_settings")
    op.drop_index("ix_voice_sessions_guild", table_name="voice_sessions")
    op.drop_table("voice_sessions")
    op.drop_index("ix_daily_xp_date", table_name="daily_xp")
    op.drop_index("ix_daily_xp_guild_date", table_name="daily_xp")
    op.drop_table("daily_xp")
    op.drop_index("ix_user_levels_guild_xp", table_name="user_levels")
    op.drop_table("user_levels")
