"""Exceptions raised by the query statistics core."""


class QueryStatsError(Exception):
    """Base class for query statistics failures."""


class StatsFetchError(QueryStatsError):
    """Reading the live statement statistics failed (timeout, lost connection)."""

    def __init__(self, database_id: str, message: str):
        super().__init__(f"[{database_id}] {message}")
        self.database_id = database_id


class StatsResetError(QueryStatsError):
    """The reset call against the live counters failed."""


class HistoryStoreError(QueryStatsError):
    """The historical store could not be read or written."""


class CaptureDataLossError(QueryStatsError):
    """
    Counters were reset but the captured rows never reached the historical store.

    The statistics for that cycle are gone from the engine, so this is the one
    capture failure that is raised instead of being logged as a skipped cycle.
    """

    def __init__(self, domain_id: str, row_count: int, cause: Exception):
        super().__init__(
            f"Reset domain '{domain_id}': counters were reset but {row_count} captured "
            f"row(s) could not be persisted: {cause}"
        )
        self.domain_id = domain_id
        self.row_count = row_count
        self.cause = cause
