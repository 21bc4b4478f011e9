# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-email admin@storefront.local --admin-password "..."]
#   Idempotent bootstrap: creates default roles and, optionally, the first admin.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users list
# - python -m flask users create --email ops@shop.test --password "..." --role manager
# - python -m flask users grant-role --email ops@shop.test --role admin
# - python -m flask users deactivate --email ops@shop.test
#
# Orders:
# - python -m flask orders reap-abandoned [--hours 48] [--dry-run]
#   Cancel draft / pending_payment orders older than the cutoff and release their stock.
#
# Inventory:
# - python -m flask inventory low-stock [--limit 20]

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import StorefrontError
from .extensions import db
from .models import User
from .permissions import DEFAULT_ROLES
from .services import inventory_service, order_service
from .services.auth_service import assign_role, create_user, create_default_roles, get_user_role_names
from .services.session_service import revoke_all_user_sessions

ROLE_NAMES = [name for name, _ in DEFAULT_ROLES]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-email', help='Create this admin user if it does not exist')
@click.option('--admin-password', help='Password for the admin user')
@with_appcontext
def init_system(admin_email, admin_password):
    """Create default roles and, optionally, the first admin account."""
    click.echo("START Initializing storefront...")
    create_default_roles()
    click.echo(f"PASS Roles: {', '.join(ROLE_NAMES)}")

    if not admin_email:
        return
    if not admin_password:
        click.echo("FAIL --admin-password is required with --admin-email")
        return

    existing = db.session.query(User).filter_by(email=admin_email.strip().lower()).first()
    if existing:
        click.echo(f"WARN  User '{existing.email}' already exists, skipping...")
        return
    try:
        user = create_user(
            admin_email, admin_password,
            name="Administrator", roles=("admin",),
            bcrypt_rounds=current_app.config.get("BCRYPT_ROUNDS", 12),
        )
        click.echo(f"PASS Created admin: {user.email} (ID: {user.id})")
    except StorefrontError as e:
        click.echo(f"FAIL {e.message}")


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
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--name', default=None, help='Display name')
@click.option('--role', type=click.Choice(ROLE_NAMES), prompt=True, help='Role')
@with_appcontext
def create_user_cli(email, password, name, role):
    """
    Create a user with one role.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(
            email, password,
            name=name, roles=(role,),
            bcrypt_rounds=current_app.config.get("BCRYPT_ROUNDS", 12),
        )
        click.echo(f"PASS Created user: {user.email} (ID: {user.id}) with role '{role}'")
    except StorefrontError as e:
        click.echo(f"FAIL {e.message}")


@users_group.command('grant-role')
@click.option('--email', required=True, help='Email address')
@click.option('--role', type=click.Choice(ROLE_NAMES), required=True, help='Role to add')
@with_appcontext
def grant_role_cli(email, role):
    """Add a role to an existing user."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        click.echo(f"FAIL User not found: {email}")
        return
    if role in get_user_role_names(user.id):
        click.echo(f"WARN {user.email} already has role '{role}'")
        return
    try:
        assign_role(user.id, role)
    except StorefrontError as e:
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Granted '{role}' to {user.email}")


@users_group.command('deactivate')
@click.option('--email', required=True, help='Email address')
@with_appcontext
def deactivate_user_cli(email):
    """Deactivate a user and revoke every active session."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        click.echo(f"FAIL User not found: {email}")
        return
    user.is_active = False
    db.session.commit()
    revoked = revoke_all_user_sessions(user.id, reason="User deactivated")
    click.echo(f"PASS Deactivated {user.email} ({revoked} session(s) revoked)")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Email':<35} {'Active':<8} {'Roles'}")
    click.echo("="*80)
    for user in users:
        roles = ", ".join(sorted(get_user_role_names(user.id))) or "-"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.email:<35} {active_str:<8} {roles}")
    click.echo("="*80 + "\n")


@click.group('orders')
def orders_group():
    """Order maintenance commands."""


@orders_group.command('reap-abandoned')
@click.option('--hours', type=int, default=None,
              help='Age cutoff in hours (default: AUTO_CANCEL_PENDING_ORDERS_HOURS)')
@click.option('--dry-run', is_flag=True, help='List the orders without cancelling them')
@with_appcontext
def reap_abandoned_cli(hours, dry_run):
    """Cancel unpaid draft / pending_payment orders and release their reservations."""
    try:
        order_numbers = order_service.reap_abandoned_orders(hours, dry_run=dry_run)
    except StorefrontError as e:
        click.echo(f"FAIL {e.message}")
        return

    verb = "Would cancel" if dry_run else "Cancelled"
    click.echo(f"{verb} {len(order_numbers)} abandoned order(s).")
    for number in order_numbers:
        click.echo(f"  - {number}")


@click.group('inventory')
def inventory_group():
    """Inventory inspection commands."""


@inventory_group.command('low-stock')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def low_stock_cli(limit):
    """List variants at or below their low-stock threshold."""
    rows = inventory_service.get_low_stock_alerts(limit=limit)
    if not rows:
        click.echo("No low-stock items.")
        return

    click.echo(f"{'SKU':<20} {'Variant':<30} {'Available':>9} {'Threshold':>9}")
    for row in rows:
        click.echo(
            f"{row['variant_sku']:<20} {row['variant_name'][:30]:<30} "
            f"{row['available_quantity']:>9} {row['low_stock_threshold']:>9}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(inventory_group)
