"""initial court reservation schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

RESERVATION_STATUSES = "'pending_payment', 'pending', 'paid', 'confirmed', 'cancelled', 'completed', 'no_show'"
BLOCKING_STATUSES = "'pending_payment', 'pending', 'paid', 'confirmed'"


def upgrade():
    bind = op.get_bind()

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(100), nullable=False),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "venues",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("opening_hours", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "courts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("venue_id", sa.Integer(), sa.ForeignKey("venues.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("hourly_rate", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_courts_venue_id", "courts", ["venue_id"])

    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("court_id", sa.Integer(), sa.ForeignKey("courts.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending_payment"),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("start_time < end_time", name="ck_reservations_time_order"),
        sa.CheckConstraint(f"status IN ({RESERVATION_STATUSES})", name="ck_reservations_status"),
    )
    op.create_index("ix_reservations_user_id", "reservations", ["user_id"])
    op.create_index("ix_reservations_court_window", "reservations", ["court_id", "start_time", "end_time"])

    op.create_table(
        "queue_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("court_id", sa.Integer(), sa.ForeignKey("courts.id"), nullable=False),
        sa.Column("organizer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("max_players", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("current_players", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_per_game", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("mode", sa.String(20), nullable=False, server_default="casual"),
        sa.Column("game_format", sa.String(20), nullable=False, server_default="doubles"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_queue_sessions_court_id", "queue_sessions", ["court_id"])

    op.create_table(
        "queue_participants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("queue_session_id", sa.Integer(), sa.ForeignKey("queue_sessions.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("joined_at", sa.DateTime(), nullable=False),
        sa.Column("left_at", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="waiting"),
        sa.Column("games_played", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("games_won", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_owed", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="unpaid"),
    )
    op.create_index("ix_queue_participants_queue_session_id", "queue_participants", ["queue_session_id"])
    op.create_index("ix_queue_participants_user_id", "queue_participants", ["user_id"])
    op.create_index(
        "uq_queue_participants_present",
        "queue_participants",
        ["queue_session_id", "user_id"],
        unique=True,
        sqlite_where=sa.text("left_at IS NULL"),
        postgresql_where=sa.text("left_at IS NULL"),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("reservations.id"), nullable=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("source_id", sa.String(100), nullable=True),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(10), nullable=True),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_payments_reservation_id", "payments", ["reservation_id"])
    op.create_index("ix_payments_external_id", "payments", ["external_id"])
    op.create_index("ix_payments_source_id", "payments", ["source_id"])
    op.create_index("ix_payments_reference", "payments", ["reference"], unique=True)

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("event_id", sa.String(100), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("payment_id", "event_id", name="uq_processed_webhook_events"),
    )
    op.create_index("ix_processed_webhook_events_payment_id", "processed_webhook_events", ["payment_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("reservations.id"), nullable=True),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), nullable=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("event_id", sa.String(100), nullable=True),
        sa.Column("from_status", sa.String(32), nullable=True),
        sa.Column("to_status", sa.String(32), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_audit_events_reservation_id", "audit_events", ["reservation_id"])
    op.create_index("ix_audit_events_payment_id", "audit_events", ["payment_id"])

    op.create_table(
        "payment_locks",
        sa.Column("lock_key", sa.String(150), primary_key=True),
        sa.Column("owner", sa.String(100), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )

    # no two blocking reservations may overlap on one court
    if bind.dialect.name == "postgresql":
        op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
        op.execute(
            "ALTER TABLE reservations ADD CONSTRAINT ex_reservations_no_overlap "
            "EXCLUDE USING gist (court_id WITH =, tsrange(start_time, end_time, '[)') WITH &&) "
            f"WHERE (status IN ({BLOCKING_STATUSES}))"
        )
    elif bind.dialect.name == "sqlite":
        for name, timing, self_filter in (
            ("tr_reservations_no_overlap_insert", "BEFORE INSERT ON reservations", ""),
            (
                "tr_reservations_no_overlap_update",
                "BEFORE UPDATE OF status, start_time, end_time, court_id ON reservations",
                "AND r.id != NEW.id ",
            ),
        ):
            op.execute(
                f"CREATE TRIGGER {name} {timing} "
                f"WHEN NEW.status IN ({BLOCKING_STATUSES}) "
                "BEGIN "
                "SELECT RAISE(ABORT, 'ex_reservations_no_overlap') "
                "WHERE EXISTS (SELECT 1 FROM reservations r "
                f"WHERE r.court_id = NEW.court_id {self_filter}"
                f"AND r.status IN ({BLOCKING_STATUSES}) "
                "AND r.start_time < NEW.end_time AND r.end_time > NEW.start_time); "
                "END"
            )


def downgrade():
    bind = op.get_bind()
    if bind.dialect.name == "sqlite":
        op.execute("DROP TRIGGER IF EXISTS tr_reservations_no_overlap_update")
        op.execute("DROP TRIGGER IF EXISTS tr_reservations_no_overlap_insert")

    op.drop_table("payment_locks")
    op.drop_table("audit_events")
    op.drop_table("processed_webhook_events")
    op.drop_table("payments")
    op.drop_table("queue_participants")
    op.drop_table("queue_sessions")
    op.drop_table("reservations")
    op.drop_table("courts")
    op.drop_table("venues")
    op.drop_table("users")
