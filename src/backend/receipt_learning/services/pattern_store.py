"""
In-memory store of learned patterns for one user.

Patterns are loaded once from durable storage, served to the matcher from an
immutable snapshot, and written back in the background after each mutation.
The store is append-only: patterns are never deleted, only their success
rate moves (and corrections may be attached once).
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from receipt_learning.config import settings
from receipt_learning.models.receipt import FieldValues, LearnedPattern
from receipt_learning.services.storage import PatternRepository
from receipt_learning.utils.tokens import extract_key_tokens

logger = logging.getLogger(__name__)


SUCCESS_RATE_FLOOR = 0.1
SUCCESS_RATE_CEILING = 1.0
POSITIVE_STEP = 0.1
NEGATIVE_STEP = 0.2


def adjust_success_rate(success_rate: float, was_correct: bool) -> float:
    """+0.1 for a confirmed result, -0.2 for a wrong one, clamped to [0.1, 1.0]."""
    if was_correct:
        adjusted = min(success_rate + POSITIVE_STEP, SUCCESS_RATE_CEILING)
    else:
        adjusted = max(success_rate - NEGATIVE_STEP, SUCCESS_RATE_FLOOR)
    # Keep float drift (0.7 + 0.1 + 0.1 ...) from leaking into stored values
    return round(adjusted, 6)


def as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class PatternStore:
    """Learned patterns for a single user.

    Reads are lock-free against a cached tuple; each mutation takes the lock,
    swaps in a new record, and queues a write for the background persister.
    """

    def __init__(
        self,
        user_id: str,
        repository: PatternRepository,
        window: int = settings.PATTERN_WINDOW,
        max_age_days: Optional[int] = settings.PATTERN_MAX_AGE_DAYS,
        max_write_attempts: int = settings.PATTERN_WRITE_ATTEMPTS,
        autoload: bool = True
    ):
        self.user_id = user_id
        self.repository = repository
        self.window = window
        self.max_age_days = max_age_days
        self.max_write_attempts = max_write_attempts

        self._patterns: List[LearnedPattern] = []
        self._positions: Dict[str, int] = {}
        self._snapshot: Optional[Tuple[LearnedPattern, ...]] = None
        self._lock = threading.Lock()

        # (operation, pattern id, failed attempts)
        self._pending: Deque[Tuple[str, str, int]] = deque()
        self._persist_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pattern-store")

        if autoload:
            self.load()

    def __len__(self) -> int:
        return len(self.snapshot())

    def load(self) -> int:
        """
        Replace in-memory contents with everything in durable storage.

        Failure is not fatal: the store starts empty and extraction falls back
        to merchant and heuristic strategies.

        Returns:
            Number of patterns loaded
        """
        try:
            loaded = self.repository.load_all(self.user_id)
        except Exception as e:
            logger.warning("Could not load learned patterns, starting empty", extra={
                "user_id": self.user_id,
                "error": str(e)
            }, exc_info=True)
            loaded = []

        ordered = sorted(loaded, key=lambda p: as_utc(p.timestamp))

        with self._lock:
            self._patterns = ordered
            self._positions = {p.id: i for i, p in enumerate(ordered)}
            self._snapshot = None

        logger.info("Pattern store ready", extra={
            "user_id": self.user_id,
            "count": len(ordered)
        })
        return len(ordered)

    def snapshot(self) -> Tuple[LearnedPattern, ...]:
        """Immutable view of all patterns in insertion order."""
        snapshot = self._snapshot
        if snapshot is None:
            with self._lock:
                if self._snapshot is None:
                    self._snapshot = tuple(self._patterns)
                snapshot = self._snapshot
        return snapshot

    def get(self, pattern_id: str) -> Optional[LearnedPattern]:
        with self._lock:
            position = self._positions.get(pattern_id)
            return self._patterns[position] if position is not None else None

    def append(self, pattern: LearnedPattern) -> Future:
        """
        Add a pattern and persist it in the background.

        Returns:
            Future of the background write; callers may ignore it
        """
        with self._lock:
            if pattern.id in self._positions:
                raise ValueError(f"Pattern {pattern.id} already stored")
            self._positions[pattern.id] = len(self._patterns)
            self._patterns.append(pattern)
            self._snapshot = None
            self._pending.append(('append', pattern.id, 0))

        logger.info("Stored learned pattern", extra={
            "user_id": self.user_id,
            "pattern_id": pattern.id,
            "merchant": pattern.merchant_name,
            "confidence": pattern.confidence
        })
        return self._schedule_persist()

    def apply_feedback(
        self,
        pattern_id: str,
        was_correct: bool,
        corrections: Optional[FieldValues] = None
    ) -> Optional[LearnedPattern]:
        """
        Move a pattern's success rate after the user confirms or rejects it.

        Corrections supplied with negative feedback are attached only if the
        pattern has none yet.

        Returns:
            The updated pattern, or None if the id is unknown
        """
        with self._lock:
            position = self._positions.get(pattern_id)
            if position is None:
                updated = None
            else:
                current = self._patterns[position]
                changes = {'success_rate': adjust_success_rate(current.success_rate, was_correct)}
                if (not was_correct and corrections is not None
                        and not corrections.is_empty() and current.user_corrections is None):
                    changes['user_corrections'] = corrections
                updated = current.model_copy(update=changes)
                self._patterns[position] = updated
                self._snapshot = None
                self._pending.append(('update', pattern_id, 0))

        if updated is None:
            logger.warning("Feedback for unknown pattern ignored", extra={
                "user_id": self.user_id,
                "pattern_id": pattern_id
            })
            return None

        logger.info("Applied pattern feedback", extra={
            "user_id": self.user_id,
            "pattern_id": pattern_id,
            "was_correct": was_correct,
            "success_rate": updated.success_rate
        })
        self._schedule_persist()
        return updated

    def find_candidates(
        self,
        merchant_name: Optional[str] = None,
        text_tokens: Iterable[str] = ()
    ) -> List[LearnedPattern]:
        """
        Patterns worth ranking for a new receipt, newest first.

        The active window holds the `window` most recent patterns (optionally
        limited to `max_age_days`). Older patterns come back only when they
        share the merchant or a key token, again capped at `window`.
        """
        ordered = [
            pattern for _, pattern in sorted(
                enumerate(self.snapshot()),
                key=lambda item: (as_utc(item[1].timestamp), item[0]),
                reverse=True
            )
        ]

        if self.max_age_days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=self.max_age_days)
            recent = [p for p in ordered if as_utc(p.timestamp) >= cutoff]
        else:
            recent = ordered

        active = recent[:self.window]
        active_ids = {p.id for p in active}

        tokens = set(text_tokens)
        extras = []
        for pattern in ordered:
            if len(extras) >= self.window:
                break
            if pattern.id in active_ids:
                continue
            same_merchant = merchant_name is not None and pattern.merchant_name == merchant_name
            if same_merchant or (tokens and tokens & set(extract_key_tokens(pattern.ocr_text))):
                extras.append(pattern)

        return active + extras

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Write all pending changes now and wait for the result.

        Returns:
            True if nothing is left pending
        """
        self._schedule_persist().result(timeout=timeout)
        with self._persist_lock:
            return not self._pending

    def close(self) -> None:
        self.flush()
        self._executor.shutdown(wait=True)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    def _schedule_persist(self) -> Future:
        return self._executor.submit(self._drain_pending)

    def _drain_pending(self) -> None:
        """
        Replay queued writes in order.

        A failed write moves behind the rest of the queue together with any
        later writes for the same pattern, and is dropped after
        `max_write_attempts` failures.
        """
        with self._persist_lock:
            retry: Deque[Tuple[str, str, int]] = deque()
            failed_ids = set()

            while self._pending:
                operation, pattern_id, attempts = self._pending.popleft()
                if pattern_id in failed_ids:
                    retry.append((operation, pattern_id, attempts))
                    continue

                pattern = self.get(pattern_id)
                try:
                    if operation == 'append':
                        self.repository.append_one(self.user_id, pattern)
                    else:
                        self.repository.update_one(self.user_id, pattern)
                except Exception as e:
                    attempts += 1
                    failed_ids.add(pattern_id)
                    logger.error("Error persisting learned pattern", extra={
                        "user_id": self.user_id,
                        "pattern_id": pattern_id,
                        "operation": operation,
                        "attempts": attempts,
                        "error": str(e)
                    }, exc_info=True)

                    if attempts >= self.max_write_attempts:
                        logger.error("Dropping learned pattern write", extra={
                            "user_id": self.user_id,
                            "pattern_id": pattern_id,
                            "operation": operation,
                            "attempts": attempts
                        })
                    else:
                        retry.append((operation, pattern_id, attempts))

            self._pending.extend(retry)
