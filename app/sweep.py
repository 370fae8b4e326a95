"""
Expiry Sweep Runner

Runs one expired hold sweep and exits, for cron or a platform scheduler:

    python -m app.sweep
"""

import asyncio
import logging
import sys

from app.config import settings
from app.db.session import close_database_connection, get_db_context
from app.services.expiry_sweeper import ExpirySweeper
from app.services.notifier import WhatsAppNotifier

logger = logging.getLogger(__name__)


async def run_sweep() -> int:
    """
    Run a single sweep.

    Returns:
        Process exit code: 0 when every row was handled, 1 otherwise
    """
    try:
        async with get_db_context() as db:
            result = await ExpirySweeper(db, WhatsAppNotifier()).run()
    finally:
        await close_database_connection()

    logger.info(f"Sweep result: {result.model_dump()}")
    return 1 if result.failed else 0


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    sys.exit(asyncio.run(run_sweep()))


if __name__ == "__main__":
    main()
