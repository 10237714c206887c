# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/culture_crm/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates the default staff user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Staff users:
# - python -m flask users list
#   List staff users and their active status.
# - python -m flask users create --first-name Anna --last-name Petrova --email anna@studio.local
#   Create a staff user (prompts if options are omitted).
#
# Clients:
# - python -m flask clients deactivate-inactive [--months 6] [--batch-size 100]
#   Mark clients without activity for N months as INACTIVE. Meant for a nightly cron.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .services import client_activity_service


DEFAULT_ADMIN_EMAIL = "admin@culture-crm.local"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize the system: ensures a default staff user exists.

    The user's id is what the front end sends as X-User-Id until real
    staff accounts are created.
    """
    click.echo("START Initializing culture CRM...")

    user = db.session.query(User).filter_by(email=DEFAULT_ADMIN_EMAIL).first()
    if user:
        click.echo(f"PASS Using existing staff user: {user.email} (ID: {user.id})")
    else:
        user = User(first_name="Admin", last_name="Studio", email=DEFAULT_ADMIN_EMAIL, is_active=True)
        db.session.add(user)
        db.session.commit()
        click.echo(f"PASS Created staff user: {user.email} (ID: {user.id})")

    click.echo("DONE System initialized.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """Staff user commands."""


@users_group.command('list')
@with_appcontext
def list_users():
    """List all staff users."""
    users = db.session.query(User).order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<35} {'Email':<30} {'Active'}")
    click.echo("="*80)

    for user in users:
        name = f"{user.first_name} {user.last_name}"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {name:<35} {(user.email or '-'):<30} {active_str}")


@users_group.command('create')
@click.option('--first-name', prompt=True, help='First name')
@click.option('--last-name', prompt=True, help='Last name')
@click.option('--email', prompt=True, help='Email address')
@with_appcontext
def create_user_cli(first_name, last_name, email):
    """Create a staff user."""
    if db.session.query(User).filter_by(email=email).first():
        click.echo(f"FAIL User with email '{email}' already exists")
        return

    user = User(first_name=first_name, last_name=last_name, email=email, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user: {email} (ID: {user.id})")


@click.group('clients')
def clients_group():
    """Client maintenance commands."""


@clients_group.command('deactivate-inactive')
@click.option('--months', type=int, default=None, help='Inactivity window (default: CLIENT_INACTIVITY_MONTHS)')
@click.option('--batch-size', type=int, default=None, help='Rows per batch (default: CLIENT_DEACTIVATION_BATCH_SIZE)')
@with_appcontext
def deactivate_inactive_cli(months, batch_size):
    """
    Deactivate clients with no activity in the inactivity window.

    VIP clients are never touched.
    """
    months = months or current_app.config["CLIENT_INACTIVITY_MONTHS"]
    batch_size = batch_size or current_app.config["CLIENT_DEACTIVATION_BATCH_SIZE"]

    deactivated = client_activity_service.deactivate_inactive_clients(months=months, batch_size=batch_size)
    click.echo(f"Deactivated {deactivated} clients inactive for more than {months} months.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(clients_group)
