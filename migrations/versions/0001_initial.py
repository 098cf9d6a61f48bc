"""Initial schema — drivers, rides, payments, wallets, transactions"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "drivers",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), unique=True, nullable=False),
        sa.Column("category", sa.String(30), nullable=False, server_default="sedan"),
        sa.Column("status", sa.String(20), nullable=False, server_default="offline"),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_drivers_status", "drivers", ["status"])
    op.create_index("idx_drivers_category_status", "drivers", ["category", "status"])

    op.create_table(
        "rides",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("rider_id", sa.String, nullable=False),
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("pickup_address", sa.String(500), nullable=True),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_region", sa.String(100), nullable=True),
        sa.Column("drop_address", sa.String(500), nullable=True),
        sa.Column("drop_lat", sa.Float, nullable=False),
        sa.Column("drop_lng", sa.Float, nullable=False),
        sa.Column("drop_region", sa.String(100), nullable=True),
        sa.Column("category", sa.String(30), nullable=False, server_default="sedan"),
        sa.Column("trip_kind", sa.String(20), nullable=False, server_default="local"),
        sa.Column("distance_km", sa.Float, nullable=False),
        sa.Column("duration_min", sa.Float, nullable=False),
        sa.Column("estimated_fare", sa.Numeric(10, 2), nullable=False),
        sa.Column("fare", sa.Numeric(10, 2), nullable=False),
        sa.Column("state_tax", sa.Numeric(10, 2), server_default="0"),
        sa.Column("entry_toll", sa.Numeric(10, 2), server_default="0"),
        sa.Column("airport_fee", sa.Numeric(10, 2), server_default="0"),
        sa.Column("extra_charges", sa.Numeric(10, 2), server_default="0"),
        sa.Column("waiting_minutes", sa.Integer, server_default="0"),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("commission", sa.Numeric(10, 2), nullable=True),
        sa.Column("payment_mode", sa.String(20), nullable=False, server_default="cash"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("status", sa.String(30), nullable=False, server_default="SEARCHING"),
        sa.Column("otp", sa.String(10), nullable=True),
        sa.Column("wait_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("driver_arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("request_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pickup_distance_km", sa.Float, nullable=True),
        sa.Column("pickup_duration_min", sa.Float, nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("cancellation_fee", sa.Numeric(10, 2), server_default="0"),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_rider", "rides", ["rider_id"])
    op.create_index("idx_rides_driver", "rides", ["driver_id"])
    op.create_index("idx_rides_created", "rides", ["created_at"])
    op.create_index("idx_rides_request_expires", "rides", ["request_expires_at"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), unique=True, nullable=False),
        sa.Column("rider_id", sa.String, nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(5), server_default="INR"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("order_ref", sa.String(255), nullable=True),
        sa.Column("psp_ref", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_payments_ride", "payments", ["ride_id"])
    op.create_index("idx_payments_status", "payments", ["status"])

    op.create_table(
        "wallets",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("user_id", sa.String, unique=True, nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(5), server_default="INR"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_wallets_user", "wallets", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("wallet_id", sa.String, sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("user_id", sa.String, nullable=False),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), nullable=True),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_transactions_wallet", "transactions", ["wallet_id"])
    op.create_index("idx_transactions_user", "transactions", ["user_id"])
    op.create_index("idx_transactions_ride", "transactions", ["ride_id"])


def downgrade() -> None:
    op.drop_table("transactions")
    op.drop_table("wallets")
    op.drop_table("payments")
    op.drop_table("rides")
    op.drop_table("drivers")
