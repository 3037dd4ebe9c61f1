#!/usr/bin/env python3
"""
CLI for the Medical Force sync engine

Commands:
    bootstrap     - Load the history window for every clinic, then refresh recent days
    refresh       - Re-fetch the recent window (requires a bootstrap in the same process)
    snapshot      - Bootstrap, then print metrics for a clinic and date range
    cache-info    - Show cache entries and usage
    cache-clear   - Delete cached month chunks
    token-status  - Exchange a token per clinic and show expiry
    health-check  - Token exchange + one-day fetch per clinic

Usage:
    python cli.py bootstrap
    python cli.py snapshot --clinic yokohama --start 2024-01-01 --end 2024-01-31
    python cli.py snapshot --json > snapshot.json
    python cli.py cache-info --clinic mito
    python cli.py cache-clear
"""

import json
import logging
import sys
from datetime import date

import click

from constants import ALL_TENANTS, TENANT_IDS, get_tenant_display_name

CLINIC_CHOICE = click.Choice([ALL_TENANTS] + TENANT_IDS, case_sensitive=False)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
    )


def _coordinator(ctx):
    """Coordinator from ctx.obj (tests) or built from MF_* settings."""
    obj = ctx.ensure_object(dict)
    if obj.get('coordinator') is None:
        from services.sync_coordinator import SyncError, build_coordinator_from_env
        try:
            obj['coordinator'] = build_coordinator_from_env()
        except SyncError as e:
            click.secho(f"Error: {e}", fg="red")
            sys.exit(1)
    return obj['coordinator']


def _cache_store(ctx):
    obj = ctx.ensure_object(dict)
    if obj.get('cache_store') is None:
        from services.sync_coordinator import build_cache_store_from_env
        obj['cache_store'] = build_cache_store_from_env()
    return obj['cache_store']


def _bootstrap(coordinator) -> bool:
    from services.sync_coordinator import SyncError

    def progress(index, total, tenant_id):
        click.echo(f"  [{index}/{total}] {get_tenant_display_name(tenant_id)} ({tenant_id}) loaded")

    try:
        result = coordinator.connect(progress=progress)
    except SyncError as e:
        click.secho(f"Bootstrap failed: {e}", fg="red")
        return False

    for tenant_id, error in result.errors.items():
        click.secho(f"  {tenant_id}: {error}", fg="yellow")
    return True


def _print_refresh_result(result) -> None:
    click.echo(f"Records:   {result.record_count}")
    click.echo(f"Duration:  {result.duration_seconds:.1f}s")
    click.echo(click.style("Succeeded: ", fg="white") + click.style(", ".join(result.succeeded) or "-", fg="green"))
    failed = ", ".join(result.failed_tenants) or "-"
    click.echo(click.style("Failed:    ", fg="white") + click.style(failed, fg="red" if result.failed_tenants else "green"))


@click.group()
@click.version_option(version="1.0.0", prog_name="mf-sync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, verbose):
    """Medical Force Sync CLI - Load, cache and aggregate clinic daily accounts."""
    ctx.ensure_object(dict)
    _setup_logging(verbose)


@cli.command()
@click.pass_context
def bootstrap(ctx):
    """Load the history window for every configured clinic."""
    coordinator = _coordinator(ctx)
    click.echo(f"Bootstrapping {len(coordinator.tenant_ids)} clinic(s)...")
    if not _bootstrap(coordinator):
        sys.exit(1)

    result = coordinator.last_bootstrap
    click.echo("=" * 60)
    click.secho("BOOTSTRAP SUMMARY", fg="cyan", bold=True)
    click.echo("=" * 60)
    _print_refresh_result(result)
    click.echo(f"State:     {coordinator.state.value}")


@cli.command()
@click.option("--clinic", type=CLINIC_CHOICE, default=None, help="Refresh one clinic only")
@click.pass_context
def refresh(ctx, clinic):
    """Bootstrap, then re-fetch the recent window."""
    coordinator = _coordinator(ctx)
    from services.sync_coordinator import SyncState

    if coordinator.state != SyncState.READY and not _bootstrap(coordinator):
        sys.exit(1)

    try:
        result = coordinator.refresh_now(clinic.lower() if clinic else None)
    except ValueError as e:
        raise click.UsageError(str(e))

    click.echo("=" * 60)
    click.secho("REFRESH SUMMARY", fg="cyan", bold=True)
    click.echo("=" * 60)
    _print_refresh_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--clinic", type=CLINIC_CHOICE, default=ALL_TENANTS, show_default=True)
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="First day (default: first of the --end month, else this month)")
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Last day (default: today)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def snapshot(ctx, clinic, start, end, output_json):
    """Print dashboard metrics for a clinic and date range."""
    from services.aggregation import DateRange
    from services.sync_coordinator import SyncState

    coordinator = _coordinator(ctx)
    try:
        date_range = DateRange.resolve(
            start.date() if start else None,
            end.date() if end else None,
            coordinator.today(),
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--start/--end")

    if coordinator.state != SyncState.READY and not _bootstrap(coordinator):
        sys.exit(1)

    snap = coordinator.get_snapshot(clinic.lower(), date_range)

    if output_json:
        click.echo(json.dumps(snap.to_dict(), indent=2, ensure_ascii=False, default=str))
        return

    kpis = snap.sections.get('current_month_kpis') or {}
    click.echo("=" * 60)
    click.secho(f"SNAPSHOT - {clinic} {date_range.start} .. {date_range.end}", fg="cyan", bold=True)
    click.echo("=" * 60)
    click.echo(f"As of:        {snap.as_of}")
    click.echo(f"Records:      {snap.record_count}")
    click.echo(f"Visits:       {kpis.get('visit_count', 0):,}")
    click.echo(f"Revenue:      {kpis.get('revenue', 0):,.0f}")
    click.echo(f"Unit price:   {kpis.get('unit_price', 0):,.0f}")

    staff = snap.sections.get('staff_ranking') or []
    if staff:
        click.echo()
        click.secho("TOP STAFF:", fg="yellow", bold=True)
        for row in staff[:5]:
            click.echo(f"  {row['rank']:>2}. {row['staff_name']:<20} {row['revenue']:>12,.0f}")

    for entry in snap.errors:
        click.secho(f"  section {entry['section']} failed: {entry['error']}", fg="red")


@cli.command("cache-info")
@click.option("--clinic", type=click.Choice(TENANT_IDS, case_sensitive=False), default=None)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def cache_info(ctx, clinic, output_json):
    """Show cached month chunks and usage."""
    info = _cache_store(ctx).info(clinic.lower() if clinic else None)

    if output_json:
        click.echo(json.dumps(info, indent=2))
        return

    click.echo(f"Schema version: {info['schema_version']}")
    click.echo(f"Entries:        {info['entries']}")
    click.echo(f"Bytes used:     {info['bytes_used']:,} / {info['capacity_bytes']:,}")
    for key in info['keys']:
        click.echo(f"  - {key}")


@cli.command("cache-clear")
@click.option("--clinic", type=click.Choice(TENANT_IDS, case_sensitive=False), default=None)
@click.pass_context
def cache_clear(ctx, clinic):
    """Delete cached month chunks (one clinic or all)."""
    removed = _cache_store(ctx).clear(clinic.lower() if clinic else None)
    click.secho(f"Removed {removed} cache entries", fg="green")


@cli.command("token-status")
@click.pass_context
def token_status(ctx):
    """Exchange a token for each clinic and show its expiry."""
    from services.medical_force_client import AuthError

    vault = _coordinator(ctx).orchestrator.vault
    failures = 0
    for tenant_id in vault.tenant_ids:
        try:
            vault.get_token(tenant_id)
        except AuthError as e:
            failures += 1
            click.secho(f"  {tenant_id:<10} FAILED  {e}", fg="red")
            continue
        status = vault.token_status(tenant_id)
        color = "green" if status['is_valid'] else "yellow"
        click.secho(
            f"  {tenant_id:<10} valid={status['is_valid']}  expires_at={status['expires_at']}  "
            f"remaining={status['time_until_expiry']}",
            fg=color,
        )
    if failures:
        sys.exit(1)


@cli.command("health-check")
@click.option("--day", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.pass_context
def health_check(ctx, day):
    """Token exchange + one-day fetch for each clinic."""
    coordinator = _coordinator(ctx)
    vault = coordinator.orchestrator.vault
    credentials = [vault.get_credential(t) for t in vault.tenant_ids]
    report = coordinator.orchestrator.client.health_check(
        credentials, day.date() if day else date.today()
    )
    click.echo(json.dumps(report, indent=2, ensure_ascii=False))
    if report['status'] != 'healthy':
        sys.exit(1)


if __name__ == "__main__":
    cli()
