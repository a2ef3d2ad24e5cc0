# Overview: Flask CLI command groups for bootstrap, reference data and ledger maintenance.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Business management:
# - python -m flask businesses list
# - python -m flask businesses create --code "SOUQ" --name "Souq Store"
# - python -m flask businesses add-branch --business-id 1 --name "Muscat"
# - python -m flask businesses settings --business-id 1 --tax-enabled --tax-rate 5 --commission-enabled --min-commission 5.000
#
# Vendor management:
# - python -m flask vendors list
# - python -m flask vendors create --code "V001" --name "Dates Co"
#
# Ledger maintenance:
# - python -m flask ledger verify --business-id 1
#   Check the cash chain and vendor accumulation invariants for every scope.
# - python -m flask ledger reconcile --business-id 1
#   List postings that never reached DONE and entries missing an audit row.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Branch, Business, Vendor
from .services import reconciliation_service, settings_service
from .validation import ValidationError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create all tables. Safe to run repeatedly."""
    db.create_all()
    click.echo("PASS Schema ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL LEDGER DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


# =============================================================================
# BUSINESS MANAGEMENT COMMANDS
# =============================================================================

@click.group('businesses')
def businesses_group():
    """Business (tenant), branch and pricing settings commands."""


@businesses_group.command('list')
@with_appcontext
def list_businesses():
    """List all businesses with their branches."""
    businesses = db.session.query(Business).order_by(Business.id).all()

    if not businesses:
        click.echo("No businesses found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Code':<15} {'Name':<30} {'Active':<8} {'Branches'}")
    click.echo("="*80)

    for business in businesses:
        active_str = "Yes" if business.is_active else "No"
        branches = ", ".join(b.name for b in business.branches) or "-"
        click.echo(f"{business.id:<5} {business.code:<15} {business.name:<30} {active_str:<8} {branches}")

    click.echo("="*80 + "\n")


@businesses_group.command('create')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--name', required=True, help='Business name')
@with_appcontext
def create_business_cli(code, name):
    """Create a new business."""
    existing = db.session.query(Business).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Business with code '{code}' already exists")
        return

    business = Business(code=code, name=name, is_active=True)
    db.session.add(business)
    db.session.commit()

    click.echo(f"PASS Created business: {business.name} (ID: {business.id}, Code: {business.code})")


@businesses_group.command('add-branch')
@click.option('--business-id', type=int, required=True, help='Business ID')
@click.option('--name', required=True, help='Branch name')
@click.option('--code', help='Branch code')
@with_appcontext
def add_branch_cli(business_id, name, code):
    """Add a branch to a business."""
    business = db.session.get(Business, business_id)
    if not business:
        click.echo(f"FAIL Business ID {business_id} not found")
        return

    existing = db.session.query(Branch).filter_by(business_id=business_id, name=name).first()
    if existing:
        click.echo(f"FAIL Branch '{name}' already exists in this business")
        return

    branch = Branch(business_id=business_id, name=name, code=code)
    db.session.add(branch)
    db.session.commit()

    click.echo(f"PASS Created branch: {branch.name} (ID: {branch.id}) in '{business.name}'")


@businesses_group.command('settings')
@click.option('--business-id', type=int, required=True, help='Business ID')
@click.option('--tax-enabled/--tax-disabled', default=None, help='Charge tax on sales')
@click.option('--tax-rate', help='Tax rate in percent, e.g. 5')
@click.option('--commission-enabled/--commission-disabled', default=None, help='Count vendor commission')
@click.option('--commission-rate', help='Default commission rate in percent')
@click.option('--min-commission', help='Minimum vendor subtotal before commission counts, e.g. 5.000')
@with_appcontext
def settings_cli(business_id, tax_enabled, tax_rate, commission_enabled, commission_rate, min_commission):
    """Show or update a business's pricing settings."""
    changes = {
        "tax_enabled": tax_enabled,
        "tax_rate": tax_rate,
        "vendor_commission_enabled": commission_enabled,
        "default_commission_rate": commission_rate,
        "minimum_commission_amount": min_commission,
    }
    changes = {k: v for k, v in changes.items() if v is not None}

    if changes:
        try:
            settings_service.update_business_settings(business_id, **changes)
        except (ValidationError, settings_service.SettingsError) as e:
            click.echo(f"FAIL {e}")
            return

    rules = settings_service.get_pricing_rules(business_id)
    click.echo(f"Tax:        {'on' if rules.tax_enabled else 'off'} ({rules.tax_rate}%)")
    click.echo(f"Commission: {'on' if rules.vendor_commission_enabled else 'off'} "
               f"(default {rules.default_commission_rate}%, minimum {rules.minimum_commission_amount})")


# =============================================================================
# VENDOR COMMANDS
# =============================================================================

@click.group('vendors')
def vendors_group():
    """Vendor (consignment supplier) commands."""


@vendors_group.command('list')
@with_appcontext
def list_vendors():
    vendors = db.session.query(Vendor).order_by(Vendor.id).all()
    if not vendors:
        click.echo("No vendors found.")
        return
    for vendor in vendors:
        active_str = "Yes" if vendor.is_active else "No"
        click.echo(f"{vendor.id:<5} {vendor.code:<15} {vendor.name:<30} {active_str}")


@vendors_group.command('create')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--name', required=True, help='Vendor name')
@with_appcontext
def create_vendor_cli(code, name):
    """Register a vendor."""
    existing = db.session.query(Vendor).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Vendor with code '{code}' already exists")
        return

    vendor = Vendor(code=code, name=name, is_active=True)
    db.session.add(vendor)
    db.session.commit()
    click.echo(f"PASS Created vendor: {vendor.name} (ID: {vendor.id}, Code: {vendor.code})")


# =============================================================================
# LEDGER MAINTENANCE COMMANDS
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Ledger integrity and reconciliation commands."""


@ledger_group.command('verify')
@click.option('--business-id', type=int, required=True, help='Business ID')
@with_appcontext
def verify_cli(business_id):
    """Check chain and accumulation invariants for every scope of a business."""
    report = reconciliation_service.reconcile_business(business_id)
    breaks = report["chain_breaks"]
    if not breaks:
        click.echo("PASS All ledger chains are consistent.")
        return

    for problem in breaks:
        entry = problem.get("tracking_id") or problem.get("transaction_id")
        click.echo(
            f"FAIL [{problem['ledger']}] branch={problem['branch_id']} "
            f"vendor={problem.get('vendor_id', '-')} {entry}: {problem['problem']} "
            f"(expected {problem['expected']}, got {problem['actual']})"
        )
    raise click.exceptions.Exit(1)


@ledger_group.command('reconcile')
@click.option('--business-id', type=int, required=True, help='Business ID')
@with_appcontext
def reconcile_cli(business_id):
    """List postings that need a replay."""
    report = reconciliation_service.reconcile_business(business_id)

    for event in report["incomplete_events"]:
        click.echo(
            f"WARN {event['kind']} {event['idempotency_key']} stopped at {event['state']}"
            + (f": {event['failure_reason']}" if event["failure_reason"] else "")
        )
    for entry in report["unmatched_cash_entries"]:
        click.echo(f"WARN cash entry {entry['tracking_id']} ({entry['idempotency_key']}) has no audit row")
    for entry in report["unmatched_vendor_transactions"]:
        click.echo(f"WARN vendor transaction {entry['transaction_id']} ({entry['idempotency_key']}) has no audit row")

    if report["ok"]:
        click.echo("PASS Nothing to reconcile.")
    else:
        click.echo("Replay each event with its idempotency key to finish it.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(businesses_group)
    app.cli.add_command(vendors_group)
    app.cli.add_command(ledger_group)
