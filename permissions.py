# ─── permissions.py ────────────────────────────────────────────────
import logging

from errors import TransientInfraError

logger = logging.getLogger(__name__)

DENIED_TEXT = "❌ You don't have admin access."


class AdminPolicy:
    """Admin = listed in ADMIN_IDS or flagged is_admin in the users table."""

    def __init__(self, configured_ids: set[int], db):
        self.configured_ids = set(configured_ids)
        self.db = db

    async def is_admin(self, user_id: int) -> bool:
        if user_id in self.configured_ids:
            return True
        try:
            return await self.db.is_admin(user_id)
        except TransientInfraError as e:
            # fail closed: no admin surface while the database is down
            logger.warning("Admin lookup for %s failed: %s", user_id, e)
            return False
