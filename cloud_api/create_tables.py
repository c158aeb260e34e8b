import psycopg2
from dotenv import load_dotenv

from cloud_api.app.billing.config import load_database_config

load_dotenv()

DDL = """
CREATE TABLE IF NOT EXISTS subscriptions (
    subscription_id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    plan TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'active', 'past_due', 'cancelled')),
    provider_subscription_id TEXT,
    current_period_start TIMESTAMPTZ,
    current_period_end TIMESTAMPTZ,
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    canceled_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS subscriptions_provider_ref_idx
    ON subscriptions (provider_subscription_id);

CREATE TABLE IF NOT EXISTS invoices (
    invoice_id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    subscription_id TEXT REFERENCES subscriptions (subscription_id),
    number TEXT NOT NULL DEFAULT '',
    amount_cents INTEGER NOT NULL CHECK (amount_cents >= 0),
    currency CHAR(3) NOT NULL DEFAULT 'EUR',
    status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'paid', 'failed')),
    provider_ref TEXT,
    provider_invoice_id TEXT,
    provider_env TEXT NOT NULL DEFAULT 'test',
    paid_at TIMESTAMPTZ,
    due_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS invoices_provider_invoice_idx ON invoices (provider_invoice_id);

CREATE TABLE IF NOT EXISTS licenses (
    license_id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    subscription_id TEXT REFERENCES subscriptions (subscription_id),
    license_key TEXT NOT NULL UNIQUE,
    plan TEXT NOT NULL,
    max_devices INTEGER NOT NULL DEFAULT 1 CHECK (max_devices >= 1),
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'revoked', 'expired')),
    valid_from TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    valid_until TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS licenses_one_active_paid_per_customer
    ON licenses (customer_id)
    WHERE status = 'active' AND plan <> 'trial';

CREATE TABLE IF NOT EXISTS payments (
    payment_id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    subscription_id TEXT REFERENCES subscriptions (subscription_id),
    invoice_id TEXT REFERENCES invoices (invoice_id),
    provider TEXT NOT NULL,
    provider_env TEXT NOT NULL DEFAULT 'test',
    provider_payment_id TEXT,
    provider_status TEXT,
    amount_cents INTEGER NOT NULL CHECK (amount_cents >= 0),
    currency CHAR(3) NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('succeeded', 'failed')),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS license_events (
    event_id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL,
    license_id TEXT NOT NULL REFERENCES licenses (license_id),
    event_type TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS webhook_deliveries (
    delivery_id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    event_type TEXT NOT NULL,
    provider_event_id TEXT,
    status TEXT NOT NULL CHECK (status IN ('processed', 'ignored', 'failed')),
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    error_message TEXT,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    org_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT,
    customer_id TEXT,
    license_id TEXT,
    data JSONB,
    is_read BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def main():
    db_cfg = load_database_config()
    with psycopg2.connect(**db_cfg.connect_kwargs()) as conn, conn.cursor() as cur:
        cur.execute(DDL)
        conn.commit()
    print("Done. Reconciliation tables are in place.")


if __name__ == "__main__":
    main()
