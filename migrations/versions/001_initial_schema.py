"""Initial schema: drivers, rides, stops, earnings, ratings and promotions.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

RIDE_STATUSES = (
    "REQUESTED",
    "ACCEPTED",
    "ARRIVED",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
    "NO_DRIVERS",
)
ACTIVE_PREDICATE = sa.text(
    "status IN ('REQUESTED', 'ACCEPTED', 'ARRIVED', 'IN_PROGRESS')"
)
ASSIGNED_PREDICATE = sa.text("status IN ('ACCEPTED', 'ARRIVED', 'IN_PROGRESS')")


def _timestamp(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("first_name", sa.String(80), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(80), nullable=False, server_default=""),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("vehicle_make", sa.String(60), nullable=True),
        sa.Column("vehicle_model", sa.String(60), nullable=True),
        sa.Column("vehicle_color", sa.String(30), nullable=True),
        sa.Column("license_plate", sa.String(20), nullable=True),
        sa.Column(
            "status",
            sa.Enum("PENDING", "APPROVED", "SUSPENDED", name="driverstatus"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("service_types", sa.JSON, nullable=False),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("current_lat", sa.Float, nullable=True),
        sa.Column("current_lng", sa.Float, nullable=True),
        _timestamp("last_location_at", nullable=True),
        sa.Column("rating", sa.Float, nullable=False, server_default="5.0"),
        sa.Column("total_rides", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_earnings", sa.Float, nullable=False, server_default="0"),
        _timestamp("created_at", server_default=sa.func.now()),
    )
    op.create_index("idx_drivers_online", "drivers", ["is_online", "status"])

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("rider_id", sa.String(64), nullable=False),
        sa.Column(
            "driver_id", sa.String(64), sa.ForeignKey("drivers.id"), nullable=True
        ),
        sa.Column("pickup_address", sa.String(255), nullable=False, server_default=""),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dropoff_address", sa.String(255), nullable=False, server_default=""),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column(
            "service_class",
            sa.Enum("STANDARD", "XL", "BLACK", "GREEN", name="serviceclass"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(*RIDE_STATUSES, name="ridestatus"),
            nullable=False,
            server_default="REQUESTED",
        ),
        sa.Column("distance_miles", sa.Float, nullable=False, server_default="0"),
        sa.Column("duration_minutes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("base_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("distance_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("time_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("booking_fee", sa.Float, nullable=False, server_default="0"),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("promo_code", sa.String(32), nullable=True),
        sa.Column("promo_discount", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("platform_fee", sa.Float, nullable=False, server_default="0"),
        sa.Column("driver_earnings", sa.Float, nullable=False, server_default="0"),
        sa.Column("tip", sa.Float, nullable=False, server_default="0"),
        sa.Column("cancellation_fee", sa.Float, nullable=False, server_default="0"),
        sa.Column("cancel_reason", sa.String(255), nullable=True),
        sa.Column(
            "cancelled_by",
            sa.Enum("RIDER", "DRIVER", name="cancelledby"),
            nullable=True,
        ),
        sa.Column("is_scheduled", sa.Boolean, nullable=False, server_default=sa.false()),
        _timestamp("scheduled_for", nullable=True),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        _timestamp("requested_at", server_default=sa.func.now()),
        _timestamp("dispatched_at", nullable=True),
        _timestamp("accepted_at", nullable=True),
        _timestamp("arrived_at", nullable=True),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        _timestamp("cancelled_at", nullable=True),
        _timestamp("no_drivers_at", nullable=True),
        _timestamp("updated_at", server_default=sa.func.now()),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_rider", "rides", ["rider_id"])
    op.create_index("idx_rides_driver", "rides", ["driver_id"])
    op.create_index("idx_rides_scheduled", "rides", ["is_scheduled", "scheduled_for"])
    # One active ride per rider, enforced by the database
    op.create_index(
        "uq_rides_rider_active",
        "rides",
        ["rider_id"],
        unique=True,
        postgresql_where=ACTIVE_PREDICATE,
    )
    # One ride in progress per driver
    op.create_index(
        "uq_rides_driver_assigned",
        "rides",
        ["driver_id"],
        unique=True,
        postgresql_where=ASSIGNED_PREDICATE,
    )

    # ── ride_stops ────────────────────────────────────────────────────
    op.create_table(
        "ride_stops",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "ride_id",
            sa.String(36),
            sa.ForeignKey("rides.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("address", sa.String(255), nullable=False, server_default=""),
        sa.Column("lat", sa.Float, nullable=False),
        sa.Column("lng", sa.Float, nullable=False),
    )
    op.create_index("idx_ride_stops_ride", "ride_stops", ["ride_id"])

    # ── earnings ──────────────────────────────────────────────────────
    op.create_table(
        "earnings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "driver_id", sa.String(64), sa.ForeignKey("drivers.id"), nullable=False
        ),
        sa.Column(
            "ride_id",
            sa.String(36),
            sa.ForeignKey("rides.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("gross_amount", sa.Float, nullable=False),
        sa.Column("platform_fee", sa.Float, nullable=False),
        sa.Column("net_amount", sa.Float, nullable=False),
        sa.Column("tip", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("PENDING", "PAID", name="earningstatus"),
            nullable=False,
            server_default="PENDING",
        ),
        _timestamp("created_at", server_default=sa.func.now()),
    )
    op.create_index("idx_earnings_driver", "earnings", ["driver_id", "created_at"])

    # ── ratings ───────────────────────────────────────────────────────
    op.create_table(
        "ratings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ride_id", sa.String(36), sa.ForeignKey("rides.id"), nullable=False),
        sa.Column(
            "from_role", sa.Enum("RIDER", "DRIVER", name="role"), nullable=False
        ),
        sa.Column("from_id", sa.String(64), nullable=False),
        sa.Column("to_id", sa.String(64), nullable=False),
        sa.Column("score", sa.Integer, nullable=False),
        sa.Column("comment", sa.String(500), nullable=True),
        _timestamp("created_at", server_default=sa.func.now()),
        sa.UniqueConstraint("ride_id", "from_role", name="uq_ratings_ride_side"),
    )
    op.create_index("idx_ratings_to", "ratings", ["to_id"])

    # ── promotions ────────────────────────────────────────────────────
    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(32), unique=True, nullable=False),
        sa.Column(
            "type", sa.Enum("FIXED", "PERCENT", name="promotype"), nullable=False
        ),
        sa.Column("value", sa.Float, nullable=False),
        sa.Column("max_discount", sa.Float, nullable=True),
        sa.Column("min_fare", sa.Float, nullable=True),
        sa.Column("usage_limit", sa.Integer, nullable=True),
        sa.Column("usage_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("per_user_limit", sa.Integer, nullable=False, server_default="1"),
        _timestamp("valid_until", nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "promo_usages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "promo_code_id",
            sa.Integer,
            sa.ForeignKey("promo_codes.id"),
            nullable=False,
        ),
        sa.Column("rider_id", sa.String(64), nullable=False),
        sa.Column("ride_id", sa.String(36), sa.ForeignKey("rides.id"), nullable=False),
        _timestamp("created_at", server_default=sa.func.now()),
    )
    op.create_index(
        "idx_promo_usages_rider", "promo_usages", ["promo_code_id", "rider_id"]
    )


def downgrade() -> None:
    op.drop_table("promo_usages")
    op.drop_table("promo_codes")
    op.drop_table("ratings")
    op.drop_table("earnings")
    op.drop_table("ride_stops")
    op.drop_table("rides")
    op.drop_table("drivers")
    for enum_name in (
        "promotype",
        "role",
        "earningstatus",
        "cancelledby",
        "ridestatus",
        "serviceclass",
        "driverstatus",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
