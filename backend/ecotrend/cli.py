# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/ecotrend/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to ecotrend (PowerShell: $env:FLASK_APP="ecotrend").
# - Use: python -m flask <group> <command> [options]
#
# Database:
# - python -m flask db-admin init
#   Create all tables that do not exist yet (development; use `flask db upgrade` in production).
#
# Devices:
# - python -m flask devices register --device-id AA:BB:CC:DD:EE:FF --name "Station 1" --location "Abay 10"
#   Register a device with a zero balance and default tanks.
# - python -m flask devices list --limit 20
#   List registered devices with their balance.
#
# Maintenance:
# - python -m flask maintenance check-orphans
#   Report rows whose device no longer exists (exit code 1 if any).

import click
from flask.cli import with_appcontext

from .errors import EcoTrendError
from .extensions import db
from .money import money_str
from .services import balance_service, device_service, maintenance_service


@click.group('db-admin')
def db_admin_group():
    """Database bootstrap commands."""


@db_admin_group.command('init')
@with_appcontext
def init_db():
    """Create all tables (idempotent)."""
    from . import models  # noqa: F401

    db.create_all()
    click.echo("Database tables created.")


@click.group('devices')
def devices_group():
    """Device registry commands."""


@devices_group.command('register')
@click.option('--device-id', prompt=True)
@click.option('--name', prompt=True)
@click.option('--location', default="", show_default=True)
@with_appcontext
def register_device_cli(device_id, name, location):
    """Register a device (zero balance, default tanks)."""
    try:
        device = device_service.register_device(device_id, name, location)
    except EcoTrendError as e:
        raise click.ClickException(str(e))
    click.echo(f"Registered device {device.device_id} ({device.name}).")


@devices_group.command('list')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def list_devices_cli(limit):
    """List devices, newest first."""
    try:
        devices = device_service.list_devices(limit=limit, offset=0)
    except EcoTrendError as e:
        raise click.ClickException(str(e))

    if not devices:
        click.echo("No devices registered.")
        return

    for device in devices:
        balance = balance_service.get_balance(device.device_id)
        click.echo(
            f"{device.device_id}\t{device.name}\t{device.location or '-'}\tbalance={money_str(balance)}"
        )


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('check-orphans')
@with_appcontext
def check_orphans_cli():
    """
    Report rows that reference a missing device.

    Foreign keys keep this at zero; anything else means data was loaded
    with enforcement switched off.
    """
    orphans = maintenance_service.find_orphans()
    total = sum(orphans.values())
    for table, count in orphans.items():
        click.echo(f"{table}: {count}")
    if total:
        raise click.ClickException(f"Found {total} orphaned rows.")
    click.echo("No orphaned rows found.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(db_admin_group)
    app.cli.add_command(devices_group)
    app.cli.add_command(maintenance_group)
