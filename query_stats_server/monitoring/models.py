"""
Data types shared by the live source, the historical store and the aggregator.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

SORT_METRICS = ("total_minutes", "average_time_ms", "calls", "total_percent")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Support(Enum):
    UNSUPPORTED = "unsupported"
    SUPPORTED = "supported"

    @classmethod
    def of(cls, flag: bool) -> "Support":
        return cls.SUPPORTED if flag else cls.UNSUPPORTED

    def __bool__(self) -> bool:
        return self is Support.SUPPORTED


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a capability probe. Falsy when the capability is absent."""

    ok: bool
    error: Optional[str] = None
    # the probe could not reach an answer (timeout, lost connection)
    transient: bool = False

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class LiveCapabilities:
    query_hash: Support = Support.UNSUPPORTED
    total_time_column: str = "total_time"


@dataclass(frozen=True)
class StoreCapabilities:
    query_hash: Support = Support.UNSUPPORTED
    user: Support = Support.UNSUPPORTED


@dataclass
class RawStatRecord:
    """One statement row from the live view or from a historical window."""

    query: str
    total_time_ms: float
    calls: int
    query_hash: Optional[str] = None
    user: Optional[str] = None
    database_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    explainable_query: Optional[str] = None

    def __post_init__(self):
        if self.calls < 0 or self.total_time_ms < 0:
            raise ValueError(
                f"calls and total_time_ms must be non-negative (got {self.calls}, {self.total_time_ms})"
            )

    @property
    def total_minutes(self) -> float:
        return self.total_time_ms / 60000.0


@dataclass
class HistoricalRow:
    """Persisted form of a captured RawStatRecord."""

    database_id: str
    query: str
    total_time_ms: float
    calls: int
    captured_at: datetime
    query_hash: Optional[str] = None
    user: Optional[str] = None

    @classmethod
    def from_record(cls, record: RawStatRecord, database_id: str, captured_at: datetime) -> "HistoricalRow":
        return cls(
            database_id=database_id,
            query=record.query,
            total_time_ms=record.total_time_ms,
            calls=record.calls,
            captured_at=captured_at,
            query_hash=record.query_hash,
            user=record.user,
        )


@dataclass
class AggregatedStat:
    grouping_key: Tuple[Any, ...]
    representative_query: Optional[str]
    total_minutes: float
    calls: int
    average_time_ms: float = 0.0
    total_percent: float = 0.0
    explainable_query: Optional[str] = None
    query_hash: Optional[str] = None
    user: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["grouping_key"] = list(self.grouping_key)
        return data


class QueryStatsOptions(BaseModel):
    """Options accepted by query_stats(), validated once at the call boundary."""

    model_config = ConfigDict(extra="forbid")

    historical: bool = False
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    sort: str = "total_minutes"
    min_average_time: Optional[float] = Field(None, ge=0)
    min_calls: Optional[int] = Field(None, ge=0)
    query_hash: Optional[str] = None
    limit: int = Field(100, ge=1)

    @field_validator("sort")
    @classmethod
    def _known_metric(cls, value: str) -> str:
        # accept the short name used by the dashboards
        if value == "average_time":
            value = "average_time_ms"
        if value not in SORT_METRICS:
            raise ValueError(f"sort must be one of {', '.join(SORT_METRICS)}")
        return value

    @field_validator("start_at", "end_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


@dataclass
class HashStatPoint:
    captured_at: datetime
    total_minutes: float
    average_time_ms: float
    calls: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "captured_at": self.captured_at.isoformat(),
            "total_minutes": self.total_minutes,
            "average_time_ms": self.average_time_ms,
            "calls": self.calls,
        }


__all__ = [
    "SORT_METRICS",
    "utc_now",
    "as_utc",
    "Support",
    "ProbeResult",
    "LiveCapabilities",
    "StoreCapabilities",
    "RawStatRecord",
    "HistoricalRow",
    "AggregatedStat",
    "QueryStatsOptions",
    "HashStatPoint",
]
