"""Default plan catalog loaded by ``manage.py seed-plans``."""

DEFAULT_PLANS = [
    {
        "id": "trial",
        "name": "Trial",
        "max_users": 2,
        "max_properties": 10,
        "max_integrations": 0,
        "features": ["basic"],
        "price_cents": 0,
    },
    {
        "id": "basic",
        "name": "Básico",
        "max_users": 3,
        "max_properties": 50,
        "max_integrations": 1,
        "features": ["basic", "reports"],
        "price_cents": 9900,
    },
    {
        "id": "pro",
        "name": "Profissional",
        "max_users": 10,
        "max_properties": 200,
        "max_integrations": 5,
        "features": ["basic", "reports", "advanced_reports", "integrations"],
        "price_cents": 19900,
    },
    {
        "id": "enterprise",
        "name": "Empresarial",
        "max_users": 1000,
        "max_properties": 100000,
        "max_integrations": 50,
        "features": ["basic", "reports", "advanced_reports", "integrations", "api_access"],
        "price_cents": 49900,
    },
]


def seed_plans(store, price_ids=None) -> list:
    """
    Upsert the default catalog.

    ``price_ids`` maps plan id to ``{"stripe_price_id": ..., "mercadopago_plan_id": ...}``.
    """
    price_ids = price_ids or {}
    plans = [store.save_plan(**plan, **price_ids.get(plan["id"], {})) for plan in DEFAULT_PLANS]
    store.commit()
    return plans
