# ─── housekeeping.py ───────────────────────────────────────────────
# Periodic JobQueue work: TTL sweeps of the in-memory stores and the
# daily cleanup of old click events.

import logging
from datetime import timedelta

from telegram.ext import ContextTypes, JobQueue

import config
from errors import TransientInfraError
from state import ConversationStore, MediaBatchBuffer

logger = logging.getLogger(__name__)

PRUNE_INTERVAL = timedelta(days=1)


async def prune_clicks(context: ContextTypes.DEFAULT_TYPE) -> None:
    db = context.bot_data["db"]
    try:
        removed = await db.prune_clicks(config.CLICK_RETENTION_DAYS)
    except TransientInfraError as e:
        logger.warning("Click pruning skipped: %s", e)
        return
    logger.info("Pruned %s click events older than %s days", removed, config.CLICK_RETENTION_DAYS)


def schedule(job_queue: JobQueue, store: ConversationStore, batches: MediaBatchBuffer) -> None:
    store.schedule(job_queue)
    batches.schedule(job_queue)
    job_queue.run_repeating(
        prune_clicks,
        interval=PRUNE_INTERVAL,
        first=timedelta(minutes=1),
        name="prune_clicks",
    )
