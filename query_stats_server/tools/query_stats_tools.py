"""
MCP Tools for Query Statistics

1. get_query_stats() - Ranked statements, live and/or historical window
2. get_slow_queries() - Same, limited to slow and frequent statements
3. get_query_hash_history() - Captured time series for one query hash
4. check_query_stats_access() - pg_stat_statements / history capability report
5. capture_query_stats() - Run a capture cycle now
6. list_query_stats_databases() - Configured databases and reset domains

Statement text is shown for analysis only; it is never executed.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from query_stats_server.mcp_app import mcp
from query_stats_server.monitoring.errors import CaptureDataLossError, QueryStatsError
from query_stats_server.monitoring.models import AggregatedStat, QueryStatsOptions
from query_stats_server.monitoring.query_stats import QueryStatsRegistry, get_registry

logger = logging.getLogger(__name__)

MAX_QUERY_TEXT = 1000


def _format_stats(stats: List[AggregatedStat]) -> List[Dict[str, Any]]:
    formatted = []
    for stat in stats:
        item = stat.to_dict()
        for key in ("representative_query", "explainable_query"):
            text = item.get(key)
            if text and len(text) > MAX_QUERY_TEXT:
                item[key] = text[:MAX_QUERY_TEXT] + "..."
        item["total_minutes"] = round(item["total_minutes"], 4)
        item["average_time_ms"] = round(item["average_time_ms"], 3)
        item["total_percent"] = round(item["total_percent"], 2)
        formatted.append(item)
    return formatted


def query_stats_report(
    registry: QueryStatsRegistry,
    db_name: Optional[str] = None,
    slow_only: bool = False,
    **options,
) -> Dict[str, Any]:
    """Shared body of get_query_stats / get_slow_queries."""
    try:
        database = registry.get(db_name)
    except KeyError as e:
        return {"error": str(e), "prompt": f"Unknown database '{db_name}'"}

    try:
        parsed = QueryStatsOptions(**{k: v for k, v in options.items() if v is not None})
    except ValidationError as e:
        return {"error": f"Invalid options: {e}", "prompt": "Check sort, window and filter arguments"}

    try:
        stats = database.slow_queries(parsed) if slow_only else database.query_stats(parsed)
    except QueryStatsError as e:
        logger.error(f"Error collecting query stats for {database.id}: {e}")
        return {
            "error": f"Failed to collect query stats: {e}",
            "prompt": f"Could not read statement statistics for '{database.id}'",
        }

    return {
        "database": database.id,
        "display_name": database.display_name,
        "historical": parsed.historical,
        "sort": parsed.sort,
        "query_stats_enabled": database.query_stats_enabled(),
        "historical_enabled": database.historical_query_stats_enabled(),
        "count": len(stats),
        "queries": _format_stats(stats),
        "prompt": f"{len(stats)} statement group(s) for '{database.id}' ranked by {parsed.sort}",
    }


def capture_report(registry: QueryStatsRegistry, db_name: Optional[str] = None) -> Dict[str, Any]:
    try:
        results = registry.capture_query_stats(db_name)
    except KeyError as e:
        return {"error": str(e), "prompt": f"Unknown database '{db_name}'"}
    except CaptureDataLossError as e:
        return {
            "error": str(e),
            "data_loss": True,
            "prompt": "Counters were reset but the captured rows were NOT stored - check the stats database",
        }
    return {
        "results": [r.to_dict() for r in results],
        "prompt": ", ".join(f"{r.domain_id}: {r.outcome.value}" for r in results) or "No reset domains configured",
    }


@mcp.tool(
    name="get_query_stats",
    description=(
        "📊 Top statements from pg_stat_statements, optionally merged with captured history.\n\n"
        "Args: db_name, historical (bool), start_at / end_at (ISO timestamps, historical window), "
        "sort (total_minutes | average_time_ms | calls | total_percent), "
        "min_average_time (ms), min_calls, query_hash.\n"
        "Returns at most 100 groups; filters apply after ranking."
    ),
)
def get_query_stats(
    db_name: Optional[str] = None,
    historical: bool = False,
    start_at: Optional[str] = None,
    end_at: Optional[str] = None,
    sort: str = "total_minutes",
    min_average_time: Optional[float] = None,
    min_calls: Optional[int] = None,
    query_hash: Optional[str] = None,
):
    return query_stats_report(
        get_registry(),
        db_name,
        historical=historical,
        start_at=start_at,
        end_at=end_at,
        sort=sort,
        min_average_time=min_average_time,
        min_calls=min_calls,
        query_hash=query_hash,
    )


@mcp.tool(
    name="get_slow_queries",
    description=(
        "🐢 Statements that are both frequent and slow (slow_query_calls / slow_query_ms in settings.yaml)."
    ),
)
def get_slow_queries(
    db_name: Optional[str] = None,
    historical: bool = False,
    start_at: Optional[str] = None,
    end_at: Optional[str] = None,
):
    return query_stats_report(
        get_registry(),
        db_name,
        slow_only=True,
        historical=historical,
        start_at=start_at,
        end_at=end_at,
    )


@mcp.tool(
    name="get_query_hash_history",
    description="📈 Captured calls / total time per capture for one query hash (default: last 24 hours).",
)
def get_query_hash_history(query_hash: str, db_name: Optional[str] = None, hours: int = 24):
    registry = get_registry()
    try:
        database = registry.get(db_name)
    except KeyError as e:
        return {"error": str(e), "prompt": f"Unknown database '{db_name}'"}

    start_at = database.clock() - timedelta(hours=hours)
    try:
        points = database.query_hash_stats(query_hash, start_at=start_at)
    except QueryStatsError as e:
        return {"error": str(e), "prompt": "Could not read query stats history"}
    return {
        "database": database.id,
        "query_hash": query_hash,
        "points": [p.to_dict() for p in points],
        "prompt": f"{len(points)} capture(s) for hash {query_hash} in the last {hours}h",
    }


@mcp.tool(
    name="check_query_stats_access",
    description=(
        "🔍 Check pg_stat_statements availability, installation and read access, "
        "plus whether captured history is available."
    ),
)
def check_query_stats_access(db_name: Optional[str] = None):
    registry = get_registry()
    try:
        database = registry.get(db_name)
    except KeyError as e:
        return {"error": str(e), "prompt": f"Unknown database '{db_name}'"}

    report = database.access_report()
    recommendations = []
    if not report["available"]["ok"]:
        recommendations.append("Install the contrib package that ships pg_stat_statements")
    if not report["installed"]["ok"]:
        recommendations.append(
            "Add pg_stat_statements to shared_preload_libraries and run CREATE EXTENSION pg_stat_statements"
        )
    elif not report["readable"]["ok"]:
        recommendations.append("GRANT pg_read_all_stats (or SELECT on pg_stat_statements) to the monitoring user")
    if not report["historical"]:
        recommendations.append("Create the history table (stats_database.create_schema: true) to keep history")
    report["recommendations"] = recommendations or ["No action needed"]
    report["prompt"] = (
        f"Query stats {'ENABLED' if report['enabled'] else 'NOT usable'} for '{database.id}', "
        f"history {'on' if report['historical'] else 'off'}"
    )
    return report


@mcp.tool(
    name="capture_query_stats",
    description=(
        "📸 Capture live query stats into history and reset the counters for the database's reset domain "
        "(all domains when db_name is omitted)."
    ),
)
def capture_query_stats(db_name: Optional[str] = None):
    return capture_report(get_registry(), db_name)


@mcp.tool(
    name="list_query_stats_databases",
    description="📋 Configured databases with their reset domains.",
)
def list_query_stats_databases():
    registry = get_registry()
    return {
        "databases": [
            {
                "id": db.id,
                "display_name": db.display_name,
                "reset_domain": db.reset_domain_id,
                "capture": db.preset.capture_query_stats,
            }
            for db in registry
        ],
        "domains": registry.domains(),
    }
