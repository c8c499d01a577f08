"""Rentals table (SQL-only).

Revision ID: f002_rentals
Revises: f001_pricing_tables
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op

revision = "f002_rentals"
down_revision = "f001_pricing_tables"
branch_labels = None
depends_on = None

UPGRADE_SQL = """
CREATE TABLE rentals (
    id                BIGSERIAL PRIMARY KEY,
    vehicle_id        BIGINT NOT NULL,
    customer_id       BIGINT NOT NULL,
    vehicle_type      TEXT NOT NULL,
    rate_type         TEXT NOT NULL CHECK (rate_type IN ('hour', 'day')),
    start_date        TIMESTAMPTZ NOT NULL,
    end_date          TIMESTAMPTZ NOT NULL CHECK (end_date > start_date),
    status            TEXT NOT NULL DEFAULT 'Scheduled'
                      CHECK (status IN ('Scheduled', 'Active', 'In Progress', 'Completed', 'Cancelled')),
    quantity          NUMERIC(10, 2),
    unit_price        NUMERIC(12, 2),
    total_amount      NUMERIC(12, 2) CHECK (total_amount IS NULL OR total_amount >= 0),
    promo_code        TEXT,
    transport_pickup  BOOLEAN NOT NULL DEFAULT FALSE,
    transport_dropoff BOOLEAN NOT NULL DEFAULT FALSE,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_rentals_vehicle ON rentals (vehicle_id, start_date DESC);
CREATE INDEX idx_rentals_customer ON rentals (customer_id, start_date DESC);
CREATE INDEX idx_rentals_status ON rentals (status);
"""


def upgrade() -> None:
    op.get_bind().exec_driver_sql(UPGRADE_SQL)


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
