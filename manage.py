"""Management script for the database, plan catalog and tenants"""

import json
import os

import click
from dotenv import load_dotenv
from flask import current_app
from flask.cli import FlaskGroup
from flask_migrate import Migrate, upgrade

load_dotenv()

from estate_billing import create_app
from estate_billing.extensions import db
from estate_billing.plans import seed_plans


def make_app():
    app = create_app(os.getenv("APP_ENV"))
    Migrate(app, db)
    return app


cli = FlaskGroup(create_app=make_app)


def _billing():
    return current_app.extensions["billing"]


@cli.command("init-db")
def init_db():
    """Create all billing tables"""
    db.create_all()
    click.echo("Database initialized")


@cli.command("migrate-db")
def migrate_db():
    """Apply any pending database migrations"""
    click.echo("Applying database migrations...")
    upgrade()
    click.echo("Database migrations applied")


@cli.command("seed-plans")
@click.option(
    "--price-ids",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file mapping plan id to stripe_price_id / mercadopago_plan_id",
)
def seed_plans_command(price_ids):
    """Load the default plan catalog"""
    mapping = {}
    if price_ids:
        with open(price_ids) as fh:
            mapping = json.load(fh)

    plans = seed_plans(_billing().store, mapping)
    for plan in plans:
        click.echo(f"Plan {plan.id}: {plan.name}")


@cli.command("provision-tenant")
@click.argument("tenant_id")
@click.option("--name", required=True)
@click.option("--email", default=None)
@click.option("--plan", "plan_id", default=None, help="Defaults to DEFAULT_PLAN_ID")
def provision_tenant(tenant_id, name, email, plan_id):
    """Create a tenant on a trial subscription"""
    subscription = _billing().subscriptions.provision_tenant(tenant_id, name, email, plan_id)
    click.echo(
        f"Tenant {tenant_id} provisioned on {subscription.plan_id} "
        f"(trial ends {subscription.trial_ends_at:%Y-%m-%d})"
    )


if __name__ == "__main__":
    cli()
