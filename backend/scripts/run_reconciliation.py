"""
Run the subscription reconciliation job once.

Intended for an external scheduler (cron, Render/Railway cron job):

    python scripts/run_reconciliation.py

Exits 0 when the run completes (even with per-row errors or alerts) and 1
when the run could not complete.
"""

import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config.settings import settings
from app.infrastructure.db.database import close_db
from app.infrastructure.exceptions import BillingEngineError
from app.infrastructure.services.reconciliation_service import run_reconciliation_job


logger = logging.getLogger("run_reconciliation")


async def main() -> int:
    """Run reconciliation and map the outcome to a process exit code."""
    try:
        metrics = await run_reconciliation_job()
    except BillingEngineError as e:
        logger.critical(f"Reconciliation job failed: {e.message}")
        return 1
    finally:
        await close_db()

    logger.info(
        f"Reconciliation job finished: checked={metrics.total_checked} "
        f"errors={metrics.errors} drift={metrics.drift_detected}"
    )
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    sys.exit(asyncio.run(main()))
