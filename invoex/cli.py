"""
invoex CLI commands

Parse invoice images, manage product links and run the POS sync from the
command line.
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import click

from invoex.config.invoex_config import InvoexConfig, configure_logging
from invoex.context import ServiceContext
from invoex.models.catalog import decision_to_dict
from invoex.utils.images import detect_media_type


def _build_context(ctx) -> ServiceContext:
    if ctx.obj.get('services') is None:
        ctx.obj['services'] = ServiceContext.from_config(ctx.obj['config'])
        ctx.call_on_close(ctx.obj['services'].close)
    return ctx.obj['services']


def _parse_day(value):
    if value is None:
        return None
    return datetime.strptime(value, '%Y-%m-%d').replace(tzinfo=timezone.utc)


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True), help='Path to configuration file')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Logging level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """invoex command-line interface"""
    config = InvoexConfig(config_path)
    if log_level:
        config.set('logging.level', log_level)
    configure_logging(config)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--db-path', type=click.Path(), help='SQLite database path')
@click.option('--save', 'save_path', type=click.Path(), help='Write the effective configuration to this file')
@click.pass_context
def init(ctx, db_path, save_path):
    """Create the database tables"""
    try:
        config = ctx.obj['config']
        if db_path:
            config.set('database.type', 'sqlite')
            config.set('database.path', db_path)
        services = _build_context(ctx)
        click.echo(f"✅ Database ready ({config.get('database.type')}: {services.db.engine.url})")
        if save_path:
            written = config.save(save_path)
            click.echo(f"   Configuration written to {written}")
    except Exception as e:
        click.echo(f"❌ Error initializing invoex: {str(e)}", err=True)
        raise click.Abort()


@cli.group()
def invoice():
    """Parse supplier invoices"""
    pass


@invoice.command('parse')
@click.argument('pages', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--save/--no-save', default=True, help='Persist the invoice and reconcile its product names')
@click.option('--format', type=click.Choice(['table', 'json']), default='table', help='Output format')
@click.pass_context
def parse_invoice(ctx, pages, save, format):
    """Parse an invoice from page images given in page order"""
    try:
        buffers = []
        for page in pages:
            data = Path(page).read_bytes()
            detect_media_type(data)
            buffers.append(data)

        services = _build_context(ctx)
        result = asyncio.run(services.invoice_service.process_invoice(buffers, save=save, reconcile=save))
    except Exception as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()

    invoice = result.invoice
    if format == 'json':
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.echo(f"\nVendor: {invoice.vendor.name or '-'}   Invoice: {invoice.invoice_number or '-'}   "
               f"Date: {invoice.invoice_date or '-'}")
    click.echo(f"{'Description':<45} {'Qty':>8} {'Unit ex':>10} {'Ex GST':>10} {'GST':>5} {'Conf':>5}")
    click.echo("-" * 88)
    for item in invoice.line_items:
        click.echo(
            f"{item.description[:45]:<45} {item.quantity:>8} {item.unit_cost_ex_gst:>10} "
            f"{item.price_ex_gst:>10} {'Y' if item.has_gst else 'N':>5} {item.validation_confidence:>5.2f}"
        )
    click.echo("-" * 88)
    click.echo(f"Subtotal ex GST: {invoice.subtotal_ex_gst}   GST: {invoice.gst_amount}   "
               f"Total inc GST: {invoice.total_inc_gst}")
    click.echo(f"Confidence: {invoice.confidence:.2f}")
    if invoice.requires_review:
        click.echo("⚠️  Requires review:")
        for reason in invoice.review_reasons:
            click.echo(f"   - {reason}")
    if result.invoice_id:
        click.echo(f"✅ Saved invoice {result.invoice_id}; reconciled {len(result.decisions)} product name(s)")


@cli.group()
def link():
    """Manage product name to catalog links"""
    pass


@link.command('resolve')
@click.argument('names', nargs=-1, required=True)
@click.option('--no-create', is_flag=True, help='Never create catalog items')
@click.pass_context
def resolve_names(ctx, names, no_create):
    """Resolve product names to catalog items"""
    try:
        services = _build_context(ctx)
        decisions = asyncio.run(services.reconciler.resolve_many(
            names, allow_create=False if no_create else None
        ))
    except Exception as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()
    click.echo(json.dumps({name: decision_to_dict(d) for name, d in decisions.items()}, indent=2))


@link.command('set')
@click.option('--name', required=True, help='Product name as printed on invoices')
@click.option('--item-id', required=True, help='Catalog item ID')
@click.option('--user', 'linked_by', help='Who made the link')
@click.pass_context
def set_link(ctx, name, item_id, linked_by):
    """Manually link a product name to a catalog item"""
    try:
        services = _build_context(ctx)
        record = asyncio.run(services.reconciler.link_manual(name, item_id, linked_by))
    except Exception as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()
    click.echo(f"✅ Linked '{record.product_name}' to {record.catalog_item_id}")
    click.echo(f"   Link ID: {record.id}")


@link.command('remove')
@click.option('--name', required=True, help='Product name as printed on invoices')
@click.pass_context
def remove_link(ctx, name):
    """Deactivate the link for a product name"""
    try:
        services = _build_context(ctx)
        record = asyncio.run(services.reconciler.unlink(name))
    except Exception as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()
    if record is None:
        click.echo(f"No active link for '{name}'.")
    else:
        click.echo(f"✅ Unlinked '{name}' from {record.catalog_item_id}")


@link.command('suggest')
@click.argument('name')
@click.option('--format', type=click.Choice(['table', 'json']), default='table', help='Output format')
@click.pass_context
def suggest_links(ctx, name, format):
    """Show ranked catalog suggestions for a product name"""
    try:
        services = _build_context(ctx)
        suggestions = asyncio.run(services.reconciler.suggest(name))
    except Exception as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()

    if not suggestions:
        click.echo("No suggestions found.")
        return
    if format == 'json':
        click.echo(json.dumps([s.__dict__ for s in suggestions], indent=2))
        return
    click.echo(f"{'ID':<38} {'Name':<40} {'Score':>6}")
    click.echo("-" * 86)
    for s in suggestions:
        marker = ' *' if s.is_exact_match else ''
        click.echo(f"{s.catalog_item_id:<38} {s.name[:40]:<40} {s.confidence:>6.3f}{marker}")


@link.command('pending')
@click.option('--limit', type=int, help='Maximum number of names to list')
@click.pass_context
def pending_links(ctx, limit):
    """List invoice product names without an active link"""
    try:
        services = _build_context(ctx)
        names = asyncio.run(services.gateway.list_unlinked_product_names(limit))
    except Exception as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()
    if not names:
        click.echo("No unlinked product names.")
        return
    for name in names:
        click.echo(name)


@cli.command()
@click.option('--start', help='First day of the window (YYYY-MM-DD, UTC)')
@click.option('--end', help='Last day of the window (YYYY-MM-DD, UTC)')
@click.option('--weeks', type=int, help='Window length in weeks when --start is not given')
@click.pass_context
def sync(ctx, start, end, weeks):
    """Sync catalog and sales from the POS platform"""
    try:
        config = ctx.obj['config']
        if weeks is not None:
            config.set('sync.weeks_back', weeks)
        services = _build_context(ctx)
        if services.sync_workflow is None:
            raise click.UsageError("Square access token is not configured (set SQUARE_ACCESS_TOKEN)")
        report = asyncio.run(services.sync_workflow.run(_parse_day(start), _parse_day(end)))
    except click.UsageError:
        raise
    except Exception as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()

    click.echo(f"Sync {report.status.value}: {report.window_start.date()} .. {report.window_end.date()}")
    click.echo(f"{'Phase':<10} {'Created':>8} {'Updated':>8} {'Skipped':>8} {'Failed':>8}")
    for name, counters in report.phases.items():
        suffix = '  (aborted)' if counters.aborted else ''
        click.echo(
            f"{name:<10} {counters.created:>8} {counters.updated:>8} "
            f"{counters.skipped:>8} {counters.failed:>8}{suffix}"
        )
    for error in report.errors[:20]:
        click.echo(f"   - {error}", err=True)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
