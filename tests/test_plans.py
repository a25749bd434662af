from estate_billing.plans import DEFAULT_PLANS, seed_plans


def test_catalog_is_seeded(store):
    for plan in DEFAULT_PLANS:
        assert store.get_plan(plan["id"]) is not None

    assert store.get_plan("basic").stripe_price_id == "price_basic"
    assert store.get_plan("enterprise").stripe_price_id is None


def test_reseeding_updates_in_place(store):
    seed_plans(store, {"enterprise": {"stripe_price_id": "price_enterprise"}})

    assert store.get_plan("enterprise").stripe_price_id == "price_enterprise"
    assert store.get_plan("pro").max_users == 10
