# Overview: Flask CLI command groups for bootstrap, key management, and maintenance.

# backend/vault/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Organization management (MULTI-TENANT):
# - python -m flask orgs list
#   List all organizations.
# - python -m flask orgs create --name "Acme Corp" --slug acme --plan enterprise
#   Create a new organization (tenant).
#
# Members:
# - python -m flask members add --org-id 1 --email ada@acme.test --name "Ada" --role admin
#   Add a member to an organization.
# - python -m flask members credit --org-id 1 --user-id 3 --amount 500 --reason "Welcome bonus"
#   Credit a member's balance from the command line.
#
# API keys:
# - python -m flask api-keys create --org-id 1 --name "ERP sync" --permission currency:write --permission orders:read
#   Create an API key. The raw key is printed once and never stored.
# - python -m flask api-keys list --org-id 1
# - python -m flask api-keys revoke --org-id 1 --key-id 4
#
# Webhooks and integrations:
# - python -m flask webhooks add --org-id 1 --url https://example.test/hook --event order.created
#   Subscribe an endpoint. The signing secret is printed once.
# - python -m flask webhooks process-retries --limit 100
#   Run one retry sweep over due failed deliveries (same as the cron route).
# - python -m flask integrations add --org-id 1 --type slack --url https://hooks.slack.com/services/...
#
# Orders:
# - python -m flask orders reconcile [--org-id 1] [--dry-run]
#   Re-run the debit for orders whose settlement failed or stalled.
#
# Maintenance:
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.
# - python -m flask maintenance cleanup-deliveries --retention-days 30
#   Delete finished webhook deliveries older than the retention window.

import click
from flask.cli import with_appcontext

from .errors import AppError
from .services import (
    api_key_service,
    currency_service,
    integration_service,
    maintenance_service,
    member_service,
    order_service,
    retry_service,
    webhook_service,
)


@click.group('orgs')
def orgs_group():
    """Organization (tenant) management."""


@orgs_group.command('list')
@with_appcontext
def list_orgs():
    orgs = member_service.list_organizations()
    if not orgs:
        click.echo("No organizations found.")
        return
    for org in orgs:
        status = "active" if org.is_active else "inactive"
        click.echo(f"{org.id}\t{org.slug}\t{org.name}\tplan={org.plan}\t{status}")


@orgs_group.command('create')
@click.option('--name', required=True, help='Organization display name')
@click.option('--slug', required=True, help='URL-safe unique identifier')
@click.option('--plan', default='pro', show_default=True)
@click.option('--currency-name', default='Credits', show_default=True)
@with_appcontext
def create_org(name, slug, plan, currency_name):
    try:
        org = member_service.create_organization(name, slug, plan=plan, currency_name=currency_name)
    except AppError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Slug: {org.slug}, Plan: {org.plan})")


@click.group('members')
def members_group():
    """Member management."""


@members_group.command('add')
@click.option('--org-id', type=int, required=True)
@click.option('--email', required=True)
@click.option('--name', 'display_name', default='', help='Display name (defaults to the email local part)')
@click.option('--role', type=click.Choice(member_service.ROLES), default='member', show_default=True)
@with_appcontext
def add_member(org_id, email, display_name, role):
    try:
        member = member_service.add_member(org_id, email, display_name, role=role)
    except AppError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Added member {member['email']} (ID: {member['id']}, Role: {member['role']})")


@members_group.command('credit')
@click.option('--org-id', type=int, required=True)
@click.option('--user-id', type=int, required=True)
@click.option('--amount', type=int, required=True)
@click.option('--reason', required=True)
@with_appcontext
def credit_member(org_id, user_id, amount, reason):
    try:
        result = currency_service.credit(org_id, user_id, amount, reason, performed_by="cli")
    except AppError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS New balance: {result.new_balance} (transaction {result.transaction_id})")


@click.group('api-keys')
def api_keys_group():
    """API key management."""


@api_keys_group.command('create')
@click.option('--org-id', type=int, required=True)
@click.option('--name', required=True)
@click.option('--permission', 'permissions', multiple=True, required=True,
              help='Capability token such as currency:write or orders:*')
@with_appcontext
def create_api_key(org_id, name, permissions):
    try:
        key, raw_key = api_key_service.create_api_key(org_id, name, list(permissions))
    except AppError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Created API key {key['name']} (ID: {key['id']})")
    click.echo(f"Key (shown once): {raw_key}")


@api_keys_group.command('list')
@click.option('--org-id', type=int, required=True)
@with_appcontext
def list_api_keys(org_id):
    keys = api_key_service.list_api_keys(org_id)
    if not keys:
        click.echo("No API keys found.")
        return
    for key in keys:
        state = "revoked" if key.get("revoked_at") else "active"
        click.echo(f"{key['id']}\t{key['key_prefix']}...\t{key['name']}\t{','.join(key['permissions'])}\t{state}")


@api_keys_group.command('revoke')
@click.option('--org-id', type=int, required=True)
@click.option('--key-id', type=int, required=True)
@with_appcontext
def revoke_api_key(org_id, key_id):
    try:
        api_key_service.revoke_api_key(org_id, key_id)
    except AppError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Revoked API key {key_id}")


@click.group('webhooks')
def webhooks_group():
    """Webhook endpoints and delivery retries."""


@webhooks_group.command('add')
@click.option('--org-id', type=int, required=True)
@click.option('--url', required=True)
@click.option('--event', 'events', multiple=True, required=True,
              type=click.Choice(webhook_service.ALL_EVENTS))
@with_appcontext
def add_webhook(org_id, url, events):
    try:
        endpoint = webhook_service.create_endpoint(org_id, url, list(events))
    except AppError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Created endpoint {endpoint['id']} -> {endpoint['url']}")
    click.echo(f"Signing secret (shown once): {endpoint['secret']}")


@webhooks_group.command('process-retries')
@click.option('--limit', type=int, default=None, help='Max deliveries per sweep (default: WEBHOOK_RETRY_BATCH)')
@with_appcontext
def process_retries(limit):
    summary = retry_service.process_retries(limit=limit)
    click.echo(f"Processed {summary.processed}: {summary.succeeded} succeeded, {summary.failed} failed")


@click.group('integrations')
def integrations_group():
    """Chat integrations (Slack, Teams)."""


@integrations_group.command('add')
@click.option('--org-id', type=int, required=True)
@click.option('--type', 'integration_type', type=click.Choice(integration_service.INTEGRATION_TYPES), required=True)
@click.option('--url', required=True)
@with_appcontext
def add_integration(org_id, integration_type, url):
    try:
        integration = integration_service.create_integration(org_id, integration_type, url)
    except AppError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Created {integration['type']} integration {integration['id']}")


@click.group('orders')
def orders_group():
    """Order settlement tools."""


@orders_group.command('reconcile')
@click.option('--org-id', type=int, default=None, help='Limit to one organization')
@click.option('--dry-run', is_flag=True, help='Only list unsettled orders')
@with_appcontext
def reconcile_orders(org_id, dry_run):
    """
    Re-run the debit for unsettled orders.

    Replays are idempotent: a debit that already committed is matched by
    its idempotency key and not applied twice.
    """
    pending = order_service.list_unsettled_orders(org_id)
    if not pending:
        click.echo("PASS No unsettled orders.")
        return

    failures = 0
    for order in pending:
        label = f"org {order['tenant_id']} order #{order['order_number']} (ID: {order['id']}, debit={order['debit_status']})"
        if dry_run:
            click.echo(label)
            continue
        try:
            settled = order_service.settle_order_debit(order['tenant_id'], order['id'])
        except AppError as e:
            failures += 1
            click.echo(f"FAIL {label}: {e.message}")
            continue
        click.echo(f"PASS {label} -> {settled['debit_status']}")

    if failures:
        raise SystemExit(1)


@click.group('maintenance')
def maintenance_group():
    """Retention cleanup commands."""


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


@maintenance_group.command('cleanup-deliveries')
@click.option('--retention-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_deliveries_cli(retention_days):
    """Delete succeeded and abandoned webhook deliveries past retention."""
    deleted = maintenance_service.cleanup_deliveries(retention_days=retention_days)
    click.echo(f"Deleted {deleted} webhook deliveries older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(orgs_group)  # Multi-tenant organization management
    app.cli.add_command(members_group)
    app.cli.add_command(api_keys_group)
    app.cli.add_command(webhooks_group)
    app.cli.add_command(integrations_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(maintenance_group)
