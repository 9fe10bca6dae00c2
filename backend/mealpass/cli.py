# Overview: Flask CLI command groups for bootstrap, seeding, and package maintenance.

# backend/mealpass/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent). Use `flask db upgrade` for migrated deployments.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Members:
# - python -m flask members add --type student --natural-id 2024-001 --name "Ana Cruz" --meals breakfast,lunch
#   Register a member.
# - python -m flask members list [--type staff]
#   List members.
#
# Packages:
# - python -m flask packages expire-lapsed [--today 2026-01-31]
#   Stamp date-bound packages whose end date has passed as expired.
# - python -m flask packages reconcile [--package-id 12]
#   Compare stored daily-basis balances with their ledgers; exits 1 on mismatch.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import MemberPackage
from .models.members import MEMBER_TYPES
from .models.packages import MEAL_TYPES, PACKAGE_DAILY_BASIS
from .services import balance_service, member_service, package_service
from .validation import DomainError, coerce_date


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    click.echo("BUILD  Creating missing tables...")
    db.create_all()
    click.echo("PASS Database ready.")


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

    click.echo("PASS Database reset complete.")


@click.group('members')
def members_group():
    """Member seeding and inspection."""


@members_group.command('add')
@click.option('--type', 'member_type', required=True, type=click.Choice(MEMBER_TYPES), help='Member type')
@click.option('--natural-id', required=True, help='Roll number or employee ID')
@click.option('--name', 'full_name', required=True, help='Full name')
@click.option('--meals', default=','.join(MEAL_TYPES), help='Preferred meals, comma separated')
@with_appcontext
def add_member(member_type, natural_id, full_name, meals):
    """Register a member."""
    preferred = tuple(m.strip() for m in meals.split(',') if m.strip())
    unknown = [m for m in preferred if m not in MEAL_TYPES]
    if unknown:
        raise click.BadParameter(f"Unknown meals: {', '.join(unknown)}", param_hint='--meals')

    try:
        member = member_service.create_member(
            member_type=member_type,
            natural_id=natural_id,
            full_name=full_name,
            meals=preferred,
        )
        db.session.commit()
    except DomainError as e:
        db.session.rollback()
        raise click.ClickException(e.message)

    click.echo(f"PASS Created {member.member_type} {member.natural_id} (ID: {member.id})")


@members_group.command('list')
@click.option('--type', 'member_type', type=click.Choice(MEMBER_TYPES), help='Filter by member type')
@with_appcontext
def list_members(member_type):
    """List members."""
    members = member_service.list_members(member_type)
    if not members:
        click.echo("No members found.")
        return

    click.echo(f"\n{'ID':<6} {'Type':<8} {'Natural ID':<16} {'Name':<30} {'Meals':<24} {'Active'}")
    click.echo("-" * 92)
    for m in members:
        click.echo(
            f"{m.id:<6} {m.member_type:<8} {m.natural_id:<16} {m.full_name[:30]:<30} "
            f"{','.join(m.preferred_meals()):<24} {'yes' if m.is_active else 'no'}"
        )


@click.group('packages')
def packages_group():
    """Package maintenance commands."""


@packages_group.command('expire-lapsed')
@click.option('--today', 'today_raw', default=None, help='Business date (YYYY-MM-DD), defaults to today (UTC)')
@with_appcontext
def expire_lapsed(today_raw):
    """Stamp lapsed date-bound packages as expired and record history."""
    try:
        today = coerce_date('--today', today_raw)
    except DomainError as e:
        raise click.BadParameter(e.message, param_hint='--today')

    lapsed = package_service.run_expiry_sweep(today)
    for package in lapsed:
        click.echo(
            f"  EXPIRED package {package.id} ({package.package_type}, "
            f"{package.member_type} {package.member_id}, ended {package.end_date.isoformat()})"
        )
    click.echo(f"PASS Expired {len(lapsed)} package(s).")


@packages_group.command('reconcile')
@click.option('--package-id', type=int, default=None, help='Only this package')
@with_appcontext
def reconcile(package_id):
    """Compare daily-basis balances with their ledgers."""
    if package_id is not None:
        package_ids = [package_id]
    else:
        package_ids = [
            row.id for row in db.session.query(MemberPackage.id)
            .filter(MemberPackage.package_type == PACKAGE_DAILY_BASIS)
            .order_by(MemberPackage.id)
        ]

    mismatches = 0
    for pid in package_ids:
        try:
            result = balance_service.reconcile(pid)
        except DomainError as e:
            raise click.ClickException(e.message)
        marker = "PASS" if result.is_consistent else "FAIL"
        if not result.is_consistent:
            mismatches += 1
        click.echo(
            f"{marker} package {pid}: stored {result.stored_balance_cents} / "
            f"ledger {result.ledger_balance_cents} ({result.transaction_count} transactions)"
        )

    if mismatches:
        raise click.ClickException(f"{mismatches} package(s) out of balance")
    click.echo(f"PASS {len(package_ids)} package(s) reconciled.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(members_group)
    app.cli.add_command(packages_group)
