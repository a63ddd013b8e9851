from __future__ import annotations

from datetime import date

import click
from flask import Flask
from flask.cli import AppGroup
from sqlalchemy.exc import SQLAlchemyError

from .access import SYSTEM_PRINCIPAL
from .billing_service import generate_monthly_invoices, reclassify_overdue
from .bootstrap import upsert_super_admin
from .extensions import db

billing_cli = AppGroup("billing", help="Scheduled billing jobs.")
portal_cli = AppGroup("portal", help="Portal administration.")


@billing_cli.command("generate-monthly")
@click.option("--date", "on_date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Bill as if today were this date (YYYY-MM-DD).")
def generate_monthly_command(on_date):
    """Create this period's invoices for every active asset."""
    today = on_date.date() if on_date else date.today()
    result = generate_monthly_invoices(SYSTEM_PRINCIPAL, today=today)
    click.echo(f"Created {len(result.created)} invoice(s), skipped {result.skipped}.")
    for number in result.created:
        click.echo(f"  {number}")
    if result.failed:
        click.echo(f"Failed to bill asset(s): {', '.join(str(asset_id) for asset_id in result.failed)}", err=True)


@billing_cli.command("reclassify-overdue")
def reclassify_overdue_command():
    """Mark pending invoices past their due date as overdue."""
    changed = reclassify_overdue()
    click.echo(f"{changed} invoice(s) marked overdue.")


@portal_cli.command("create-super-admin")
@click.option("--email", prompt=True)
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--first-name", default="Portal", show_default=True)
@click.option("--last-name", default="Admin", show_default=True)
def create_super_admin_command(email, password, first_name, last_name):
    """Create a super admin, or promote an existing account."""
    try:
        user = upsert_super_admin(email, password, first_name=first_name, last_name=last_name)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise click.ClickException(f"Could not save super admin: {exc}") from exc
    click.echo(f"Super admin {user.email} ready.")


def register_commands(app: Flask) -> None:
    app.cli.add_command(billing_cli)
    app.cli.add_command(portal_cli)


__all__ = ["register_commands", "billing_cli", "portal_cli"]
