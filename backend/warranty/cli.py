# Overview: Flask CLI command groups for storefront bootstrap, batch operations and maintenance.

# backend/warranty/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Storefront management (MULTI-TENANT):
# - python -m flask storefronts list
#   List all storefronts.
# - python -m flask storefronts create --slug acme --name "Acme Store" [--domain warranty.acme.com]
#   Create a new storefront (tenant).
# - python -m flask storefronts set-status acme suspended
#   Activate, suspend or delete a storefront.
# - python -m flask storefronts add-product acme --sku TV-55 --name "55in TV" --warranty-months 24
#   Add a catalog product to a storefront.
# - python -m flask storefronts add-customer acme --email jane@example.com --name "Jane Doe"
#   Add a customer to a storefront.
#
# Barcode batches:
# - python -m flask batches progress acme <batch-id>
#   Show progress of one batch.
# - python -m flask batches run acme <batch-id>
#   Drive a batch in this process (no Celery worker needed).
# - python -m flask batches resume
#   Re-queue every queued/running batch on the Celery broker.
#
# Maintenance:
# - python -m flask barcodes expire [--storefront acme]
#   Move activated barcodes past their expiry date to expired.
# - python -m flask outbox pending --limit 20
#   List undispatched outbox rows.

import click
from flask import current_app
from flask.cli import with_appcontext

from .deadline import Deadline
from .errors import WarrantyError
from .extensions import db
from .models import BarcodeBatch, Customer, Product, Storefront, WarrantyBarcode, WarrantyClaim
from .models.tenancy import STOREFRONT_STATUS_ACTIVE, STOREFRONT_STATUSES
from .services import outbox_service
from .services.tenant_service import ResolutionHints


def _service():
    return current_app.extensions["warranty"]


def _tenant_or_exit(slug):
    try:
        return _service().resolve_tenant(ResolutionHints(explicit_slug=slug))
    except WarrantyError as exc:
        raise click.ClickException(f"{exc.code}: {exc.message}")


def _storefront_or_exit(slug):
    storefront = db.session.query(Storefront).filter_by(slug=slug.strip().lower()).first()
    if not storefront:
        raise click.ClickException(f"Storefront '{slug}' not found")
    return storefront


# =============================================================================
# SYSTEM COMMANDS
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        return
    db.drop_all()
    db.create_all()
    _service().resolver.cache.clear()
    click.echo("PASS Database reset")


# =============================================================================
# STOREFRONT MANAGEMENT COMMANDS
# =============================================================================

@click.group('storefronts')
def storefronts_group():
    """Storefront (tenant) management commands."""


@storefronts_group.command('list')
@with_appcontext
def list_storefronts():
    """List all storefronts."""
    storefronts = db.session.query(Storefront).order_by(Storefront.slug).all()

    if not storefronts:
        click.echo("No storefronts found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'Slug':<20} {'Name':<30} {'Domain':<25} {'Status':<10} {'Barcodes':<9} {'Claims'}")
    click.echo("="*100)

    for sf in storefronts:
        barcode_count = db.session.query(WarrantyBarcode).filter_by(storefront_id=sf.id).count()
        claim_count = db.session.query(WarrantyClaim).filter_by(storefront_id=sf.id).count()
        click.echo(
            f"{sf.slug:<20} {sf.name[:30]:<30} {sf.custom_domain or '-':<25} {sf.status:<10} "
            f"{barcode_count:<9} {claim_count}"
        )

    click.echo("="*100 + "\n")


@storefronts_group.command('create')
@click.option('--slug', required=True, help='URL slug (unique)')
@click.option('--name', required=True, help='Display name')
@click.option('--domain', 'custom_domain', default=None, help='Custom domain (unique)')
@with_appcontext
def create_storefront_cli(slug, name, custom_domain):
    """Create a new storefront (tenant)."""
    slug = slug.strip().lower()
    if db.session.query(Storefront).filter_by(slug=slug).first():
        click.echo(f"FAIL Storefront with slug '{slug}' already exists")
        return
    if custom_domain:
        custom_domain = custom_domain.strip().lower()
        if db.session.query(Storefront).filter_by(custom_domain=custom_domain).first():
            click.echo(f"FAIL Domain '{custom_domain}' is already used by another storefront")
            return

    storefront = Storefront(slug=slug, name=name, custom_domain=custom_domain)
    db.session.add(storefront)
    db.session.commit()
    _service().resolver.cache.clear()

    click.echo(f"PASS Created storefront: {storefront.name} (ID: {storefront.id}, Slug: {storefront.slug})")


@storefronts_group.command('set-status')
@click.argument('slug')
@click.argument('status', type=click.Choice(sorted(STOREFRONT_STATUSES)))
@with_appcontext
def set_storefront_status_cli(slug, status):
    """Activate, suspend or delete a storefront."""
    storefront = _storefront_or_exit(slug)
    storefront.status = status
    db.session.commit()
    _service().resolver.cache.invalidate(storefront.id)
    click.echo(f"PASS Storefront '{storefront.slug}' is now {status}")


@storefronts_group.command('add-product')
@click.argument('slug')
@click.option('--sku', required=True, help='SKU (unique within storefront)')
@click.option('--name', required=True, help='Product name')
@click.option('--warranty-months', type=click.IntRange(min=1), default=12, show_default=True)
@with_appcontext
def add_product_cli(slug, sku, name, warranty_months):
    """Add a catalog product to a storefront."""
    storefront = _storefront_or_exit(slug)
    if db.session.query(Product).filter_by(storefront_id=storefront.id, sku=sku).first():
        click.echo(f"FAIL Product with SKU '{sku}' already exists in '{storefront.slug}'")
        return
    product = Product(storefront_id=storefront.id, sku=sku, name=name, warranty_months=warranty_months)
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product: {product.name} (ID: {product.id}) in '{storefront.slug}'")


@storefronts_group.command('add-customer')
@click.argument('slug')
@click.option('--email', required=True, help='E-mail (unique within storefront)')
@click.option('--name', default=None, help='Customer name')
@with_appcontext
def add_customer_cli(slug, email, name):
    """Add a customer to a storefront."""
    storefront = _storefront_or_exit(slug)
    email = email.strip().lower()
    if db.session.query(Customer).filter_by(storefront_id=storefront.id, email=email).first():
        click.echo(f"FAIL Customer '{email}' already exists in '{storefront.slug}'")
        return
    customer = Customer(storefront_id=storefront.id, email=email, name=name)
    db.session.add(customer)
    db.session.commit()
    click.echo(f"PASS Created customer: {email} (ID: {customer.id}) in '{storefront.slug}'")


# =============================================================================
# BATCH COMMANDS
# =============================================================================

@click.group('batches')
def batches_group():
    """Barcode batch inspection and recovery commands."""


def _print_progress(progress: dict):
    click.echo("\n" + "="*80)
    for key in ("batch_id", "state", "requested", "minted", "collisions", "code_length",
                "rate", "eta_seconds", "failure_reason"):
        click.echo(f"{key:<16} {progress.get(key) if progress.get(key) is not None else '-'}")
    click.echo("="*80 + "\n")


@batches_group.command('progress')
@click.argument('slug')
@click.argument('batch_id')
@with_appcontext
def batch_progress_cli(slug, batch_id):
    """Show progress of one batch."""
    from .services import batch_service

    tenant = _tenant_or_exit(slug)
    try:
        progress = batch_service.get_progress(tenant, batch_id)
    except WarrantyError as exc:
        raise click.ClickException(f"{exc.code}: {exc.message}")
    _print_progress(progress.to_dict())


@batches_group.command('run')
@click.argument('slug')
@click.argument('batch_id')
@with_appcontext
def run_batch_cli(slug, batch_id):
    """Drive a batch to completion in this process."""
    tenant = _tenant_or_exit(slug)

    def report(progress):
        click.echo(f"  {progress.minted_count}/{progress.requested_count} minted, "
                   f"{progress.collision_count} collisions, length {progress.code_length}")

    click.echo(f"START Running batch {batch_id} for '{tenant.slug}'...")
    try:
        progress = _service().run_batch(tenant, batch_id, deadline=Deadline.never(), on_progress=report)
    except WarrantyError as exc:
        raise click.ClickException(f"{exc.code}: {exc.message}")
    _print_progress(progress)


@batches_group.command('resume')
@with_appcontext
def resume_batches_cli():
    """Re-queue every queued or running batch on the Celery broker."""
    from .worker import resume_batches

    count = resume_batches()
    click.echo(f"PASS Re-queued {count} batch(es)")


@batches_group.command('list')
@click.argument('slug')
@with_appcontext
def list_batches_cli(slug):
    """List batches of a storefront, newest first."""
    storefront = _storefront_or_exit(slug)
    batches = (
        db.session.query(BarcodeBatch)
        .filter_by(storefront_id=storefront.id)
        .order_by(BarcodeBatch.created_at.desc())
        .limit(50)
        .all()
    )
    if not batches:
        click.echo("No batches found.")
        return
    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<38} {'Status':<10} {'Minted':<10} {'Requested':<10} {'Collisions':<11} {'Created'}")
    click.echo("="*100)
    for b in batches:
        click.echo(
            f"{str(b.id):<38} {b.status:<10} {b.minted_count:<10} {b.requested_count:<10} "
            f"{b.collision_count:<11} {b.created_at:%Y-%m-%d %H:%M}"
        )
    click.echo("="*100 + "\n")


# =============================================================================
# MAINTENANCE COMMANDS
# =============================================================================

@click.group('barcodes')
def barcodes_group():
    """Barcode maintenance commands."""


@barcodes_group.command('expire')
@click.option('--storefront', 'slug', default=None, help='Only this storefront (default: all active)')
@with_appcontext
def expire_barcodes_cli(slug):
    """Move activated barcodes past their expiry date to expired."""
    if slug:
        tenants = [_tenant_or_exit(slug)]
    else:
        tenants = [
            _service().resolve_tenant(ResolutionHints(claim_storefront_id=str(sf.id)))
            for sf in db.session.query(Storefront).filter_by(status=STOREFRONT_STATUS_ACTIVE).all()
        ]
    total = 0
    for tenant in tenants:
        count = _service().expire_barcodes(tenant)
        total += count
        click.echo(f"  {tenant.slug}: {count} expired")
    click.echo(f"PASS Expired {total} barcode(s)")


@click.group('outbox')
def outbox_group():
    """Outbox inspection commands."""


@outbox_group.command('pending')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def outbox_pending_cli(limit):
    """List undispatched outbox rows, oldest first."""
    events = outbox_service.pending(limit=limit)
    if not events:
        click.echo("No pending outbox events.")
        return
    click.echo("\n" + "="*110)
    click.echo(f"{'Created':<20} {'Topic':<32} {'Aggregate':<14} {'Aggregate ID'}")
    click.echo("="*110)
    for event in events:
        click.echo(
            f"{event.created_at:%Y-%m-%d %H:%M:%S} {event.topic:<32} {event.aggregate_type:<14} {event.aggregate_id}"
        )
    click.echo("="*110 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(storefronts_group)  # Multi-tenant storefront management
    app.cli.add_command(batches_group)
    app.cli.add_command(barcodes_group)
    app.cli.add_command(outbox_group)
