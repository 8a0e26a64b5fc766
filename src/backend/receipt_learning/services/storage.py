"""
Durable storage adapters for learned patterns.

The pattern store treats durable storage as an opaque per-user collection:
load everything once, then append or update one record at a time.
"""

import logging
import threading
from typing import Dict, List

from receipt_learning.config import settings
from receipt_learning.models.receipt import LearnedPattern
from receipt_learning.utils.supabase import get_supabase_client

logger = logging.getLogger(__name__)


class PatternRepository:
    """Interface of the durable store collaborator."""

    def load_all(self, user_id: str) -> List[LearnedPattern]:
        raise NotImplementedError

    def append_one(self, user_id: str, pattern: LearnedPattern) -> None:
        raise NotImplementedError

    def update_one(self, user_id: str, pattern: LearnedPattern) -> None:
        raise NotImplementedError


class InMemoryPatternRepository(PatternRepository):
    """Process-local repository; used when no Supabase project is configured."""

    def __init__(self):
        self._rows: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()

    def load_all(self, user_id: str) -> List[LearnedPattern]:
        with self._lock:
            rows = list(self._rows.get(user_id, {}).values())
        return [LearnedPattern.model_validate(row) for row in rows]

    def append_one(self, user_id: str, pattern: LearnedPattern) -> None:
        with self._lock:
            self._rows.setdefault(user_id, {})[pattern.id] = pattern.model_dump(mode='json')

    def update_one(self, user_id: str, pattern: LearnedPattern) -> None:
        with self._lock:
            user_rows = self._rows.setdefault(user_id, {})
            if pattern.id not in user_rows:
                raise KeyError(f"Pattern {pattern.id} not stored for user {user_id}")
            user_rows[pattern.id] = pattern.model_dump(mode='json')


class SupabasePatternRepository(PatternRepository):
    """
    Learned patterns in a Supabase table.

    One row per pattern: indexed columns for lookups plus the full record as
    JSON in `payload`.
    """

    def __init__(self, table_name: str = settings.PATTERN_TABLE):
        self.supabase = get_supabase_client()
        self.table_name = table_name

    def _to_row(self, user_id: str, pattern: LearnedPattern) -> dict:
        payload = pattern.model_dump(mode='json')
        return {
            'id': pattern.id,
            'user_id': user_id,
            'merchant_name': pattern.merchant_name,
            'success_rate': pattern.success_rate,
            'timestamp': payload['timestamp'],
            'payload': payload,
        }

    def load_all(self, user_id: str) -> List[LearnedPattern]:
        """
        Fetch every pattern stored for the user, oldest first.

        Rows that no longer validate are skipped and logged.
        """
        response = self.supabase.table(self.table_name).select('*').eq(
            'user_id', user_id
        ).order('timestamp', desc=False).execute()

        patterns = []
        for row in response.data:
            try:
                patterns.append(LearnedPattern.model_validate(row['payload']))
            except (KeyError, ValueError):
                logger.warning("Skipping unreadable pattern row", extra={
                    "user_id": user_id,
                    "row_id": row.get('id')
                }, exc_info=True)

        logger.debug("Loaded learned patterns", extra={
            "user_id": user_id,
            "count": len(patterns)
        })
        return patterns

    def append_one(self, user_id: str, pattern: LearnedPattern) -> None:
        # Upsert keeps a retried append idempotent
        self.supabase.table(self.table_name).upsert(
            self._to_row(user_id, pattern)
        ).execute()

    def update_one(self, user_id: str, pattern: LearnedPattern) -> None:
        row = self._to_row(user_id, pattern)
        self.supabase.table(self.table_name).update({
            'success_rate': row['success_rate'],
            'payload': row['payload'],
        }).eq('id', pattern.id).eq('user_id', user_id).execute()


def default_repository() -> PatternRepository:
    """Supabase when configured, otherwise process memory."""
    if settings.SUPABASE_URL:
        return SupabasePatternRepository()
    logger.info("SUPABASE_URL not set, keeping learned patterns in memory")
    return InMemoryPatternRepository()
