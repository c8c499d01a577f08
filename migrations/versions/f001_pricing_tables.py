"""Pricing tables (SQL-only).

Revision ID: f001_pricing_tables
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op

revision = "f001_pricing_tables"
down_revision = None
branch_labels = None
depends_on = None

UPGRADE_SQL = """
CREATE TABLE vehicle_base_prices (
    id           BIGSERIAL PRIMARY KEY,
    vehicle_type TEXT NOT NULL UNIQUE,
    hourly_mad   NUMERIC(12, 2) NOT NULL CHECK (hourly_mad >= 0),
    daily_mad    NUMERIC(12, 2) NOT NULL CHECK (daily_mad >= 0),
    is_active    BOOLEAN NOT NULL DEFAULT TRUE,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE pricing_duration_tiers (
    id             BIGSERIAL PRIMARY KEY,
    vehicle_type   TEXT NOT NULL,
    rate_type      TEXT NOT NULL CHECK (rate_type IN ('hour', 'day')),
    min_qty        NUMERIC(10, 2) NOT NULL CHECK (min_qty >= 0),
    max_qty        NUMERIC(10, 2) CHECK (max_qty IS NULL OR max_qty >= min_qty),
    discount_type  TEXT NOT NULL CHECK (discount_type IN ('percent', 'fixed')),
    discount_value NUMERIC(12, 2) NOT NULL CHECK (discount_value >= 0),
    priority       INTEGER NOT NULL DEFAULT 100,
    is_active      BOOLEAN NOT NULL DEFAULT TRUE,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (discount_type <> 'percent' OR discount_value <= 100)
);

CREATE INDEX idx_duration_tiers_lookup
    ON pricing_duration_tiers (vehicle_type, rate_type, priority)
    WHERE is_active;

CREATE TABLE pricing_promos (
    id             BIGSERIAL PRIMARY KEY,
    code           TEXT NOT NULL UNIQUE CHECK (code = upper(btrim(code)) AND code <> ''),
    discount_type  TEXT NOT NULL CHECK (discount_type IN ('percent', 'fixed')),
    discount_value NUMERIC(12, 2) NOT NULL CHECK (discount_value >= 0),
    valid_from     TIMESTAMPTZ,
    valid_until    TIMESTAMPTZ,
    is_active      BOOLEAN NOT NULL DEFAULT TRUE,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (valid_until IS NULL OR valid_from IS NULL OR valid_until >= valid_from),
    CHECK (discount_type <> 'percent' OR discount_value <= 100)
);

CREATE TABLE seasonal_pricing_rules (
    id           BIGSERIAL PRIMARY KEY,
    season_name  TEXT NOT NULL,
    vehicle_type TEXT,
    multiplier   NUMERIC(6, 3) NOT NULL CHECK (multiplier > 0),
    start_date   DATE NOT NULL,
    end_date     DATE NOT NULL CHECK (end_date >= start_date),
    is_active    BOOLEAN NOT NULL DEFAULT TRUE,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE transport_fees (
    id          BIGSERIAL PRIMARY KEY,
    pickup_fee  NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (pickup_fee >= 0),
    dropoff_fee NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (dropoff_fee >= 0),
    currency    TEXT NOT NULL DEFAULT 'MAD',
    is_active   BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

-- at most one active fee row
CREATE UNIQUE INDEX uq_transport_fees_active ON transport_fees ((is_active)) WHERE is_active;
"""


def upgrade() -> None:
    op.get_bind().exec_driver_sql(UPGRADE_SQL)


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
