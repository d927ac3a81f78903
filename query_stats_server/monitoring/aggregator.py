"""
Query Stats Aggregator

Merges live pg_stat_statements rows with historical windows into one ranked,
de-duplicated list.

Merge passes:
1. (native hash, user)  - rows without a hash pass through untouched
2. (normalized text, user) - catches the same statement reported under different
   hashes (engine upgrade, hash unsupported on one side)

Percentages are relative to the merged result set, not to a database-wide total.
Ranking keeps the top N first; min_average_time / min_calls only narrow that list.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, List, Optional, Sequence

from .models import AggregatedStat, QueryStatsOptions, RawStatRecord, utc_now
from .normalizer import normalize_query

logger = logging.getLogger(__name__)

_SELECT = re.compile(r"select", re.IGNORECASE)
_NUMBERED_PLACEHOLDER = re.compile(r"\$\d+")
_LIMIT_PLACEHOLDER = re.compile(r"limit\s+\?", re.IGNORECASE)


def explainable(query: Optional[str]) -> bool:
    """True when the text looks runnable as-is (no unresolved parameters)."""
    if not query:
        return False
    return bool(
        _SELECT.search(query)
        and "?)" not in query
        and "= ?" not in query
        and not _NUMBERED_PLACEHOLDER.search(query)
        and not _LIMIT_PLACEHOLDER.search(query)
    )


@dataclass
class _Group:
    query: Optional[str]
    query_hash: Optional[str]
    user: Optional[str]
    total_minutes: float
    calls: int
    candidates: List[str] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: RawStatRecord) -> "_Group":
        candidates = [text for text in (record.explainable_query, record.query) if text]
        return cls(
            query=record.query or None,
            query_hash=record.query_hash,
            user=record.user,
            total_minutes=record.total_minutes,
            calls=record.calls,
            candidates=candidates,
        )


def _combine(members: Sequence[_Group]) -> _Group:
    with_text = next((g for g in members if g.query), None)
    query_hash = with_text.query_hash if with_text else None
    if query_hash is None:
        query_hash = next((g.query_hash for g in members if g.query_hash is not None), None)
    return _Group(
        query=with_text.query if with_text else None,
        query_hash=query_hash,
        user=next((g.user for g in members if g.user is not None), None),
        total_minutes=sum(g.total_minutes for g in members),
        calls=sum(g.calls for g in members),
        candidates=[text for g in members for text in g.candidates],
    )


def _regroup(groups: Sequence[_Group], key: Callable[[int, _Group], Hashable]) -> List[_Group]:
    buckets: Dict[Hashable, List[_Group]] = {}
    for index, group in enumerate(groups):
        buckets.setdefault(key(index, group), []).append(group)
    return [_combine(members) for members in buckets.values()]


def _hash_key(index: int, group: _Group) -> Hashable:
    if group.query_hash is None:
        return ("row", index)
    return ("hash", group.query_hash, group.user)


def _text_key(index: int, group: _Group) -> Hashable:
    return (normalize_query(group.query), group.user)


def merge_query_stats(
    live_rows: Sequence[RawStatRecord],
    historical_rows: Sequence[RawStatRecord],
    sort: str = "total_minutes",
    limit: int = 100,
    min_average_time: Optional[float] = None,
    min_calls: Optional[int] = None,
) -> List[AggregatedStat]:
    groups = [_Group.from_record(r) for r in list(live_rows) + list(historical_rows)]
    groups = _regroup(groups, _hash_key)
    groups = _regroup(groups, _text_key)

    # calls == 0 has no average; drop before computing shares
    groups = [g for g in groups if g.calls > 0]
    all_minutes = sum(g.total_minutes for g in groups)

    stats = []
    for g in groups:
        if g.query_hash is not None:
            grouping_key = (g.query_hash, g.user)
        else:
            grouping_key = (normalize_query(g.query), g.user)
        stats.append(AggregatedStat(
            grouping_key=grouping_key,
            representative_query=g.query,
            explainable_query=next((q for q in sorted(set(g.candidates)) if explainable(q)), None),
            query_hash=g.query_hash,
            user=g.user,
            total_minutes=g.total_minutes,
            calls=g.calls,
            average_time_ms=g.total_minutes * 60000.0 / g.calls,
            total_percent=g.total_minutes * 100.0 / all_minutes if all_minutes > 0 else 0.0,
        ))

    stats.sort(key=lambda s: getattr(s, sort), reverse=True)
    stats = stats[:limit]

    if min_average_time is not None:
        stats = [s for s in stats if s.average_time_ms >= min_average_time]
    if min_calls is not None:
        stats = [s for s in stats if s.calls >= min_calls]
    return stats


def filter_slow(stats: Sequence[AggregatedStat], slow_query_ms: float, slow_query_calls: int) -> List[AggregatedStat]:
    return [s for s in stats if s.calls >= slow_query_calls and s.average_time_ms >= slow_query_ms]


class QueryStatsAggregator:
    """Read path: pulls from both sources and merges. No side effects."""

    def __init__(self, clock: Callable = utc_now):
        self.clock = clock

    def query_stats(
        self,
        database_id: str,
        source,
        store,
        options: QueryStatsOptions,
        database_name: Optional[str] = None,
    ) -> List[AggregatedStat]:
        window_in_past = options.historical and options.end_at is not None and options.end_at < self.clock()
        live_rows: List[RawStatRecord] = []
        if not window_in_past:
            live_rows = source.current_stats(database_name=database_name, query_hash=options.query_hash)

        historical_rows: List[RawStatRecord] = []
        if options.historical:
            historical_rows = store.query(
                database_id,
                start_at=options.start_at,
                end_at=options.end_at,
                query_hash=options.query_hash,
            )
            if store.enabled() and not store.capabilities().user:
                # history has no per-role split; group live rows the same way
                for row in live_rows:
                    row.user = None

        stats = merge_query_stats(
            live_rows,
            historical_rows,
            sort=options.sort,
            limit=options.limit,
            min_average_time=options.min_average_time,
            min_calls=options.min_calls,
        )
        logger.info(
            f"Query stats for '{database_id}': {len(live_rows)} live + {len(historical_rows)} "
            f"historical row(s) → {len(stats)} group(s)"
        )
        return stats
