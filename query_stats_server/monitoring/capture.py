"""
Capture Coordinator

Periodic snapshot → reset → persist cycle for one reset domain: every logical
database whose counters live in the same physical pg_stat_statements state.

    Idle → Snapshotting → Resetting → Persisting → Idle
    Idle → Snapshotting → Idle                      (any member failed, or nothing to do)

- Every member is read before the single reset. One failed read aborts the whole
  cycle without resetting; unread members' counters would otherwise be lost.
- All members of a cycle share one captured_at instant.
- An engine advisory lock keyed on the domain keeps concurrent job runners from
  reading the same counters twice and resetting twice.
- Reset succeeded + persistence failed = CaptureDataLossError (raised, not absorbed).
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from .errors import CaptureDataLossError, QueryStatsError
from .models import HistoricalRow, RawStatRecord, utc_now

logger = logging.getLogger(__name__)


class CaptureState(Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    RESETTING = "resetting"
    PERSISTING = "persisting"


class CaptureOutcome(Enum):
    CAPTURED = "captured"
    EMPTY = "empty"          # nothing recorded anywhere in the domain; no reset
    ABORTED = "aborted"      # a member read (or the reset) failed; nothing reset or written
    LOCKED = "locked"        # another runner holds the domain lock
    DISABLED = "disabled"    # capture turned off, or no usable history table


@dataclass
class CaptureResult:
    domain_id: str
    outcome: CaptureOutcome
    captured_at: Optional[datetime] = None
    rows: Dict[str, int] = field(default_factory=dict)
    reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "domain": self.domain_id,
            "outcome": self.outcome.value,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "rows": dict(self.rows),
            "reason": self.reason,
        }


class CaptureCoordinator:
    def __init__(self, registry, store, row_limit: int = 1000000, clock: Callable = utc_now):
        self.registry = registry
        self.store = store
        self.row_limit = row_limit
        self.clock = clock
        self._states: Dict[str, CaptureState] = {}
        self._lock = threading.Lock()

    def state(self, domain_id: str) -> CaptureState:
        with self._lock:
            return self._states.get(domain_id, CaptureState.IDLE)

    def _set_state(self, domain_id: str, state: CaptureState) -> None:
        with self._lock:
            self._states[domain_id] = state
        logger.debug(f"Capture '{domain_id}' → {state.value}")

    def capture(self, database_id: str) -> CaptureResult:
        """Run one cycle for the reset domain that database_id belongs to."""
        owner = self.registry.get(self.registry.get(database_id).reset_domain_id)
        domain_id = owner.id

        if not owner.preset.capture_query_stats:
            return CaptureResult(domain_id, CaptureOutcome.DISABLED, reason="capture_query_stats is off")
        if not self.store.enabled():
            logger.warning(f"⚠️  Skipping capture for '{domain_id}': historical store unavailable")
            return CaptureResult(domain_id, CaptureOutcome.DISABLED, reason="historical store unavailable")

        try:
            with owner.capture_lock() as acquired:
                if not acquired:
                    logger.info(f"Capture for '{domain_id}' already running elsewhere - skipped")
                    return CaptureResult(domain_id, CaptureOutcome.LOCKED, reason="domain lock held")
                return self._run_cycle(owner, self.registry.domain_members(domain_id))
        except CaptureDataLossError:
            raise
        except QueryStatsError as e:
            logger.warning(f"⚠️  Capture for '{domain_id}' skipped: {e}")
            return CaptureResult(domain_id, CaptureOutcome.ABORTED, reason=str(e))

    def _run_cycle(self, owner, members) -> CaptureResult:
        domain_id = owner.id
        captured_at = self.clock()
        self._set_state(domain_id, CaptureState.SNAPSHOTTING)
        try:
            snapshots: Dict[str, List[RawStatRecord]] = {}
            for member in members:
                member.recheck_source()
                try:
                    snapshots[member.id] = member.current_stats(limit=self.row_limit)
                except QueryStatsError as e:
                    logger.warning(
                        f"⚠️  Snapshot of '{member.id}' failed; aborting cycle for '{domain_id}' without reset: {e}"
                    )
                    return CaptureResult(domain_id, CaptureOutcome.ABORTED, captured_at, reason=str(e))

            counts = {member_id: len(rows) for member_id, rows in snapshots.items() if rows}
            if not counts:
                logger.debug(f"Nothing to capture for '{domain_id}'")
                return CaptureResult(domain_id, CaptureOutcome.EMPTY, captured_at)

            self._set_state(domain_id, CaptureState.RESETTING)
            try:
                was_reset = owner.reset_counters()
            except QueryStatsError as e:
                logger.warning(f"⚠️  Reset failed for '{domain_id}'; nothing persisted: {e}")
                return CaptureResult(domain_id, CaptureOutcome.ABORTED, captured_at, reason=str(e))
            if not was_reset:
                reason = "pg_stat_statements not usable on the domain owner"
                logger.warning(f"⚠️  Capture for '{domain_id}' aborted: {reason}")
                return CaptureResult(domain_id, CaptureOutcome.ABORTED, captured_at, reason=reason)

            self._set_state(domain_id, CaptureState.PERSISTING)
            rows = [
                HistoricalRow.from_record(record, member_id, captured_at)
                for member_id, records in snapshots.items()
                for record in records
            ]
            try:
                self.store.append(rows)
            except Exception as e:
                logger.error(
                    f"❌ Query stats for '{domain_id}' were reset but {len(rows)} row(s) could not be stored",
                    exc_info=True,
                )
                raise CaptureDataLossError(domain_id, len(rows), e) from e

            logger.info(f"📸 Captured {sum(counts.values())} query stats row(s) for domain '{domain_id}': {counts}")
            return CaptureResult(domain_id, CaptureOutcome.CAPTURED, captured_at, rows=counts)
        finally:
            self._set_state(domain_id, CaptureState.IDLE)
