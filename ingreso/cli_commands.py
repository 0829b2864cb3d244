"""
Flask CLI commands for PIN setup and session maintenance.
"""

import click

from attendance import safely_close_expired_sessions
from ingreso.maintenance import run_scheduled_auto_checkout
from ingreso.models import PinScope
from ingreso.utils.pins import PinError, update_security_pin


@click.command('set-pin')
@click.argument('scope', type=click.Choice([s.value for s in PinScope]))
@click.option('--pin', prompt=True, hide_input=True, confirmation_prompt=True,
              help='New PIN (4 to 8 digits).')
def set_pin_command(scope, pin):
    """Set or replace the shared PIN of an access scope."""
    try:
        update_security_pin(scope, pin)
    except PinError as e:
        raise click.ClickException(str(e))
    click.echo(f"{scope} PIN updated.")


@click.command('auto-checkout')
@click.option('--force', is_flag=True, help="Run even if today's auto-checkout already succeeded.")
def auto_checkout_command(force):
    """Run today's auto-checkout through the run ledger."""
    result = run_scheduled_auto_checkout(force=force)
    click.echo(
        f"{result['runDate']}: {result['status']} "
        f"(students closed: {result['studentsClosed']}, staff closed: {result['staffClosed']}, "
        f"attempts: {result['runAttempts']})"
    )
    if result['message']:
        click.echo(result['message'])
    if result['status'] == 'error':
        raise SystemExit(1)


@click.command('close-stale-sessions')
def close_stale_sessions_command():
    """Close expired sessions now, bypassing the run ledger."""
    students_closed, staff_closed = safely_close_expired_sessions()
    click.echo(f"Closed {students_closed} student and {staff_closed} staff sessions.")


def init_app(app):
    """Register CLI commands with Flask app."""
    app.cli.add_command(set_pin_command)
    app.cli.add_command(auto_checkout_command)
    app.cli.add_command(close_stale_sessions_command)
