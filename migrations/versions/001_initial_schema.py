"""Initial schema: captains, vehicles, metrics, rides, offers, config, penalties.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kw)


def upgrade() -> None:
    # ── captains ──────────────────────────────────────────────────────
    op.create_table(
        "captains",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, unique=True, nullable=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="offline"),
        sa.Column("is_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("current_lat", sa.Float, nullable=True),
        sa.Column("current_lng", sa.Float, nullable=True),
        _ts("location_updated_at", nullable=True),
        sa.Column("rating", sa.Float, server_default="5.0"),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('online', 'offline', 'on_ride')", name="ck_captains_status"
        ),
    )
    op.create_index("idx_captains_status", "captains", ["status"])

    # ── vehicles ──────────────────────────────────────────────────────
    op.create_table(
        "vehicles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("captain_id", sa.Integer, sa.ForeignKey("captains.id"), nullable=False),
        sa.Column("vehicle_type", sa.String(32), nullable=False),
        sa.Column("make", sa.String(60), nullable=False),
        sa.Column("model", sa.String(60), nullable=False),
        sa.Column("registration_number", sa.String(32), unique=True, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
        sa.CheckConstraint(
            "vehicle_type IN ('bike', 'auto', 'cab')", name="ck_vehicles_type"
        ),
    )
    op.create_index("idx_vehicles_type_active", "vehicles", ["vehicle_type", "is_active"])
    op.create_index("idx_vehicles_captain", "vehicles", ["captain_id"])

    # ── captain_metrics ───────────────────────────────────────────────
    op.create_table(
        "captain_metrics",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "captain_id", sa.Integer, sa.ForeignKey("captains.id"),
            unique=True, nullable=False,
        ),
        sa.Column("acceptance_rate", sa.Float, nullable=False, server_default="100"),
        sa.Column("cancellation_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_offers_received", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_offers_accepted", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_offers_declined", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_offers_expired", sa.Integer, nullable=False, server_default="0"),
        sa.Column("avg_response_time_seconds", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_rides_completed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_rides_cancelled", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_cancellation_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_cancellation_reset_at", sa.Date, nullable=True),
        _ts("cooldown_until", nullable=True),
        _ts("updated_at", server_default=sa.func.now()),
    )

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("rider_id", sa.Integer, nullable=True),
        sa.Column("city", sa.String(100), nullable=False, server_default="default"),
        sa.Column("vehicle_type", sa.String(32), nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(255), nullable=True),
        sa.Column("drop_lat", sa.Float, nullable=False),
        sa.Column("drop_lng", sa.Float, nullable=False),
        sa.Column("drop_address", sa.String(255), nullable=True),
        sa.Column("estimated_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("estimated_distance_km", sa.Float, nullable=False, server_default="0"),
        sa.Column("estimated_duration_mins", sa.Float, nullable=False, server_default="0"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("excluded_captain_ids", sa.JSON, nullable=False),
        sa.Column("current_radius_km", sa.Float, nullable=True),
        sa.Column("matching_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reassignment_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("captain_id", sa.Integer, sa.ForeignKey("captains.id"), nullable=True),
        sa.Column("vehicle_id", sa.Integer, sa.ForeignKey("vehicles.id"), nullable=True),
        sa.Column("otp", sa.String(8), nullable=True),
        _ts("matched_at", nullable=True),
        _ts("last_offer_sent_at", nullable=True),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        sa.Column("cancellation_fee", sa.Float, nullable=False, server_default="0"),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column("cancelled_by", sa.String(32), nullable=True),
        sa.Column("cancelled_by_user_id", sa.Integer, nullable=True),
        _ts("cancelled_at", nullable=True),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'searching', 'matched', 'captain_arriving', "
            "'waiting_for_rider', 'in_progress', 'completed', 'cancelled')",
            name="ck_rides_status",
        ),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_captain", "rides", ["captain_id"])
    op.create_index("idx_rides_idempotency", "rides", ["idempotency_key"])

    # ── ride_offers ───────────────────────────────────────────────────
    op.create_table(
        "ride_offers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("captain_id", sa.Integer, sa.ForeignKey("captains.id"), nullable=False),
        _ts("sent_at", nullable=False),
        _ts("expires_at", nullable=False),
        sa.Column("response_status", sa.String(32), nullable=False, server_default="pending"),
        _ts("responded_at", nullable=True),
        sa.Column("decline_reason", sa.String(255), nullable=True),
        sa.Column("offer_sequence", sa.Integer, nullable=False, server_default="1"),
        sa.Column("distance_to_pickup_km", sa.Float, nullable=True),
        sa.Column("eta_minutes", sa.Integer, nullable=True),
        sa.Column("estimated_earnings", sa.Float, nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index("idx_ride_offers_ride", "ride_offers", ["ride_id"])
    op.create_index(
        "idx_ride_offers_status_expiry", "ride_offers", ["response_status", "expires_at"]
    )
    # at most one live offer per ride
    op.create_index(
        "uq_ride_offers_one_pending",
        "ride_offers",
        ["ride_id"],
        unique=True,
        postgresql_where=sa.text("response_status = 'pending'"),
    )

    # ── matching_config ───────────────────────────────────────────────
    matching_config = op.create_table(
        "matching_config",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("city", sa.String(100), unique=True, nullable=False),
        sa.Column("initial_radius_km", sa.Float, nullable=False),
        sa.Column("max_radius_km", sa.Float, nullable=False),
        sa.Column("radius_expansion_step_km", sa.Float, nullable=False),
        sa.Column("offer_timeout_seconds", sa.Integer, nullable=False),
        sa.Column("max_offers_per_ride", sa.Integer, nullable=False),
        sa.Column("max_retry_attempts", sa.Integer, nullable=False),
        sa.Column("score_weight_eta", sa.Float, nullable=False),
        sa.Column("score_weight_acceptance", sa.Float, nullable=False),
        sa.Column("score_weight_rating", sa.Float, nullable=False),
        sa.Column("score_weight_cancellation", sa.Float, nullable=False),
        sa.Column("captain_delay_threshold_minutes", sa.Integer, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )

    # ── cancellation_penalties ────────────────────────────────────────
    penalties = op.create_table(
        "cancellation_penalties",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("city", sa.String(100), nullable=False, server_default="default"),
        sa.Column("cancelled_by", sa.String(32), nullable=False),
        sa.Column("ride_status", sa.String(32), nullable=False),
        sa.Column("min_time_after_match_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_time_after_match_seconds", sa.Integer, nullable=True),
        sa.Column("penalty_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("penalty_type", sa.String(32), nullable=False, server_default="fee"),
        sa.Column("cooldown_minutes", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index(
        "idx_penalties_lookup",
        "cancellation_penalties",
        ["cancelled_by", "ride_status", "city"],
    )

    # ── reference data ────────────────────────────────────────────────
    op.bulk_insert(
        matching_config,
        [
            {
                "city": "default",
                "initial_radius_km": 1.5,
                "max_radius_km": 5.0,
                "radius_expansion_step_km": 1.0,
                "offer_timeout_seconds": 15,
                "max_offers_per_ride": 5,
                "max_retry_attempts": 3,
                "score_weight_eta": 0.40,
                "score_weight_acceptance": 0.25,
                "score_weight_rating": 0.20,
                "score_weight_cancellation": 0.15,
                "captain_delay_threshold_minutes": 3,
                "is_active": True,
            }
        ],
    )

    def rule(by, status, lo, hi, amount, kind="fee", cooldown=None):
        return {
            "city": "default",
            "cancelled_by": by,
            "ride_status": status,
            "min_time_after_match_seconds": lo,
            "max_time_after_match_seconds": hi,
            "penalty_amount": amount,
            "penalty_type": kind,
            "cooldown_minutes": cooldown,
            "is_active": True,
        }

    op.bulk_insert(
        penalties,
        [
            rule("rider", "pending", 0, None, 0),
            rule("rider", "matched", 0, 120, 0),
            rule("rider", "matched", 120, 300, 15),
            rule("rider", "captain_arriving", 0, None, 25),
            rule("rider", "waiting_for_rider", 0, None, 25),
            rule("captain", "matched", 0, None, 0, "warning"),
            rule("captain", "captain_arriving", 0, None, 0, "cooldown", 30),
        ],
    )


def downgrade() -> None:
    op.drop_table("cancellation_penalties")
    op.drop_table("matching_config")
    op.drop_table("ride_offers")
    op.drop_table("rides")
    op.drop_table("captain_metrics")
    op.drop_table("vehicles")
    op.drop_table("captains")
