from datetime import datetime, timezone

from estate_billing.extensions import db


def utcnow():
    return datetime.now(timezone.utc)


class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)


class Plan(db.Model):
    """Catalog entry. A changed plan gets a new id rather than an edit."""

    __tablename__ = "plans"

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    max_users = db.Column(db.Integer, nullable=False, default=0)
    max_properties = db.Column(db.Integer, nullable=False, default=0)
    max_integrations = db.Column(db.Integer, nullable=False, default=0)
    features = db.Column(db.JSON, nullable=False, default=list)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    stripe_price_id = db.Column(db.String(255), nullable=True)
    mercadopago_plan_id = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "max_users": self.max_users,
            "max_properties": self.max_properties,
            "max_integrations": self.max_integrations,
            "features": list(self.features or []),
            "price_cents": self.price_cents,
        }


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.String(64), db.ForeignKey("tenants.id"), nullable=False, unique=True, index=True
    )
    plan_id = db.Column(db.String(64), db.ForeignKey("plans.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="trial", index=True)

    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Provider customer/subscription ids. Opaque to the state machine.
    provider_metadata = db.Column(db.JSON, nullable=False, default=dict)

    # occurred_at of the newest webhook event applied
    last_event_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('trial', 'active', 'suspended', 'cancelled')",
            name="valid_subscription_status",
        ),
        db.CheckConstraint(
            "(status = 'cancelled') = (cancelled_at IS NOT NULL)",
            name="cancelled_at_iff_cancelled",
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "current_period_start": iso(self.current_period_start),
            "current_period_end": iso(self.current_period_end),
            "trial_ends_at": iso(self.trial_ends_at),
            "cancelled_at": iso(self.cancelled_at),
        }


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), db.ForeignKey("tenants.id"), nullable=False, index=True)
    provider = db.Column(db.String(30), nullable=False)
    external_id = db.Column(db.String(255), nullable=False)
    method = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="BRL")
    # Provider-native status, never re-mapped
    status = db.Column(db.String(50), nullable=False)
    status_detail = db.Column(db.String(255), nullable=True)
    extras = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("provider", "external_id", name="uq_payment_provider_external_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.external_id,
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "method": self.method,
            "amount": float(self.amount),
            "currency": self.currency,
            "status": self.status,
            "status_detail": self.status_detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "extras": dict(self.extras or {}),
        }


class WebhookEvent(db.Model):
    """Ledger of processed provider notifications."""

    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(30), nullable=False)
    external_event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(100), nullable=False)
    outcome = db.Column(db.String(30), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("provider", "external_event_id", name="uq_webhook_provider_event"),
    )


def as_utc(value):
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def from_unix(value):
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
