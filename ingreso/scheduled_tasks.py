"""
Scheduled background tasks for Ingreso Rápido.

Runs the nightly maintenance (auto-checkout of abandoned sessions followed by
the materialized view refresh) shortly after the local cutoff.
"""

import logging


def nightly_maintenance_job():
    """
    Scheduled job that closes sessions left open past the cutoff.

    The ledger makes it safe to run alongside the cron endpoint: whichever
    fires second sees today's successful run and skips.
    """
    from ingreso.maintenance import run_nightly_maintenance

    logger = logging.getLogger('scheduled_tasks')
    logger.info("Starting nightly maintenance job")

    try:
        result = run_nightly_maintenance()
        auto_checkout = result["autoCheckout"]
        logger.info(
            f"Nightly maintenance completed: auto-checkout {auto_checkout['status']} "
            f"({auto_checkout['studentsClosed']} students, {auto_checkout['staffClosed']} staff), "
            f"refresh {result['refresh']['status']}"
        )
    except Exception as e:
        logger.error(f"Nightly maintenance job failed: {e}", exc_info=True)
        from ingreso.extensions import db
        db.session.rollback()


def init_scheduled_tasks(app):
    """
    Initialize and start scheduled tasks.

    Args:
        app: Flask application instance
    """
    from ingreso.extensions import scheduler
    from ingreso.utils.helpers import get_school_timezone

    logger = logging.getLogger('scheduled_tasks')

    def run_with_context():
        with app.app_context():
            nightly_maintenance_job()

    if not scheduler.running:
        with app.app_context():
            tz = get_school_timezone()
        hour = app.config["AUTO_CHECKOUT_HOUR"]
        minute = app.config["AUTO_CHECKOUT_MINUTE"]

        scheduler.add_job(
            func=run_with_context,
            trigger='cron',
            hour=hour,
            minute=minute,
            timezone=tz,
            id='nightly_maintenance',
            name='Nightly auto-checkout and view refresh',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        scheduler.start()
        logger.info(f"Scheduled tasks initialized. Nightly maintenance runs at {hour:02d}:{minute:02d} {tz.zone}.")
    else:
        logger.info("Scheduler already running")
