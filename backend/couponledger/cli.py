# Overview: Flask CLI command groups for coupon issuance, policy inspection, and maintenance.

# backend/couponledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Coupons:
# - python -m flask coupons issue --kiosk-id K1 [--issued-for massage-123]
#   Issue a token and print its WhatsApp deep link.
# - python -m flask coupons wallet +905551234567
#   Show a customer's balance and reward progress.
#
# Policy:
# - python -m flask policy init
#   Seed default settings and the default reward tier (idempotent).
# - python -m flask policy show
#   Print thresholds and reward tiers.
# - python -m flask policy set max_coupons_per_day 5
#   Update one policy number (range-checked).
#
# Maintenance (schedule with cron, e.g. hourly):
# - python -m flask maintenance cleanup-tokens
#   Delete expired tokens older than 7 days and used tokens older than 90 days.
# - python -m flask maintenance expire-redemptions
#   Reject and refund pending redemptions older than 30 days.
# - python -m flask maintenance reset-rate-limits
#   Delete rate-limit counters past their reset time.
# - python -m flask maintenance run-all
#   All of the above.

import click
from flask.cli import with_appcontext

from .services import coupon_policy_service, coupon_service, maintenance_service, rate_limit_service
from .services.coupon_policy_service import PolicyValidationError, SETTING_RULES
from .services.coupon_service import TokenGenerationExhausted
from .services.phone_normalizer import PhoneValidationError
from .time_utils import to_utc_z


@click.group('coupons')
def coupons_group():
    """Coupon token and wallet commands."""


@coupons_group.command('issue')
@click.option('--kiosk-id', required=True, help='Kiosk the token is printed at')
@click.option('--issued-for', default=None, help='External reference (booking, receipt)')
@with_appcontext
def issue_token_cli(kiosk_id, issued_for):
    """Issue one coupon token."""
    try:
        issued = coupon_service.issue_token(kiosk_id, issued_for)
    except TokenGenerationExhausted as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Issued token {issued.token} (expires {to_utc_z(issued.expires_at)})")
    click.echo(f"  Message: {issued.wa_text}")
    click.echo(f"  Link:    {issued.wa_url}")


@coupons_group.command('wallet')
@click.argument('phone')
@with_appcontext
def wallet_cli(phone):
    """Show a wallet by phone number."""
    try:
        summary = coupon_service.get_wallet_summary(phone)
    except PhoneValidationError as e:
        raise click.ClickException(str(e))

    if summary is None:
        click.echo("No wallet found.")
        return

    wallet = summary.wallet
    click.echo(f"\nWallet {wallet.phone}")
    click.echo(f"  Balance:        {wallet.coupon_count}")
    click.echo(f"  Total earned:   {wallet.total_earned}")
    click.echo(f"  Total redeemed: {wallet.total_redeemed}")
    click.echo(f"  Marketing:      {'opted in' if wallet.opted_in_marketing else 'opted out'}")
    if summary.next_tier is not None and summary.remaining_to_next > 0:
        click.echo(f"  Next reward:    {summary.next_tier.name} in {summary.remaining_to_next} coupon(s)")
    for tier in summary.available_rewards:
        click.echo(f"  Available:      {tier.name} ({tier.coupons_required} coupons)")
    click.echo("")


@click.group('policy')
def policy_group():
    """Coupon policy commands."""


@policy_group.command('init')
@with_appcontext
def init_policy_cli():
    """Seed default settings and reward tier."""
    coupon_policy_service.ensure_default_policy()
    click.echo("PASS Coupon policy defaults ensured.")


@policy_group.command('show')
@with_appcontext
def show_policy_cli():
    """Print current settings and all reward tiers."""
    policy = coupon_policy_service.get_policy()

    click.echo("\n" + "="*70)
    click.echo(f"Redemption threshold:   {policy.redemption_threshold}")
    click.echo(f"Token expiration hours: {policy.token_expiration_hours}")
    click.echo(f"Max coupons per day:    {policy.max_coupons_per_day}")
    click.echo("="*70)
    click.echo(f"{'ID':<5} {'Name':<25} {'Coupons':<8} {'Active':<7} {'Order'}")
    click.echo("-"*70)

    for tier in coupon_policy_service.get_all_reward_tiers():
        active = "yes" if tier.is_active else "no"
        click.echo(f"{tier.id:<5} {tier.name[:25]:<25} {tier.coupons_required:<8} {active:<7} {tier.sort_order}")

    click.echo("="*70 + "\n")


@policy_group.command('set')
@click.argument('key', type=click.Choice(sorted(SETTING_RULES)))
@click.argument('value')
@with_appcontext
def set_policy_cli(key, value):
    """Update one policy setting."""
    try:
        row = coupon_policy_service.update_setting(key, value)
    except PolicyValidationError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS {row.key} = {row.value}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-tokens')
@with_appcontext
def cleanup_tokens_cli():
    deleted = coupon_service.cleanup_expired_tokens()
    click.echo(f"Deleted {deleted} expired or old tokens.")


@maintenance_group.command('expire-redemptions')
@with_appcontext
def expire_redemptions_cli():
    expired = coupon_service.expire_pending_redemptions()
    click.echo(f"Expired {expired} pending redemptions (coupons refunded).")


@maintenance_group.command('reset-rate-limits')
@with_appcontext
def reset_rate_limits_cli():
    deleted = rate_limit_service.reset_expired_counters()
    click.echo(f"Deleted {deleted} expired rate-limit counters.")


@maintenance_group.command('run-all')
@with_appcontext
def run_all_cli():
    """Run every coupon maintenance job once."""
    summary = maintenance_service.run_coupon_maintenance()
    click.echo(
        f"Deleted {summary['deleted_tokens']} tokens, "
        f"expired {summary['expired_redemptions']} redemptions, "
        f"deleted {summary['deleted_rate_limit_counters']} rate-limit counters."
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(coupons_group)
    app.cli.add_command(policy_group)
    app.cli.add_command(maintenance_group)
