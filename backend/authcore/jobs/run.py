"""CLI entry point for job execution."""

import sys

import click

from authcore.core.config import settings
from authcore.core.logging import get_logger, setup_logging
from authcore.db.engine import create_db_engine
from authcore.db.session import create_session_factory
from authcore.db.types import utcnow
from authcore.jobs.maintenance import JOBS

logger = get_logger(__name__)


@click.command()
@click.argument("job_key", type=click.Choice(sorted(JOBS)))
def run(job_key: str):
    """
    Run a scheduled maintenance job.

    Example:
        python -m authcore.jobs.run session_cleanup
    """
    setup_logging()
    engine = create_db_engine(settings)
    session_factory = create_session_factory(engine)
    try:
        with session_factory() as db:
            try:
                result = JOBS[job_key](db, settings, utcnow())
            except Exception as e:
                db.rollback()
                logger.error("job_failed", extra={"event": "job_failed", "job": job_key}, exc_info=True)
                click.echo(f"Job failed: {e}", err=True)
                sys.exit(1)
    finally:
        engine.dispose()

    logger.info("job_completed", extra={"event": "job_completed", "job": job_key, **result})
    click.echo(f"Job completed: {result}")


if __name__ == "__main__":
    run()
