# query_stats_server/server.py
import os
import sys
import json
import signal
import logging
import importlib
import pkgutil
import warnings
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.responses import JSONResponse, PlainTextResponse
import uvicorn

from query_stats_server import __version__
from query_stats_server.config import get_config
from query_stats_server.db_connector import postgres_connector
from query_stats_server.mcp_app import mcp
from query_stats_server.monitoring.query_stats import get_registry
from query_stats_server.monitoring.scheduler import build_scheduler

logger = logging.getLogger("server")


# -------------------------------------------------------------
# Logging
# -------------------------------------------------------------
class JSONHandler(logging.StreamHandler):
    def emit(self, record):
        sys.stdout.write(json.dumps({
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }) + "\n")


def configure_logging(level: str = "INFO", json_lines: bool = False):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler()],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("fastmcp").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    if json_lines or os.getenv("LOG_JSON") == "1":
        logging.getLogger().handlers = [JSONHandler()]


# -------------------------------------------------------------
# Tool discovery
# -------------------------------------------------------------
def import_tools(pkg_name: str = "query_stats_server.tools"):
    """Import every tool module so its @mcp.tool registrations run."""
    pkg = importlib.import_module(pkg_name)
    for _, modname, ispkg in pkgutil.iter_modules(pkg.__path__):
        if not ispkg:
            full_name = f"{pkg_name}.{modname}"
            importlib.import_module(full_name)
            logger.info(f"📦 Imported: {full_name}")


# -------------------------------------------------------------
# ASGI app
# -------------------------------------------------------------
def build_app() -> Starlette:
    config = get_config()
    registry = get_registry()
    import_tools()

    logger.info("🔍 Performing initial DB connectivity tests...")
    for db in registry:
        postgres_connector.test_connection(db.preset)

    scheduler = build_scheduler(registry, config.capture)
    mcp_http_app = mcp.http_app()

    @asynccontextmanager
    async def lifespan(app):
        scheduler.start()
        try:
            async with mcp_http_app.lifespan(app):
                yield
        finally:
            scheduler.shutdown()

    app = Starlette(lifespan=lifespan)

    async def health(request):
        return PlainTextResponse("ok")

    async def version(request):
        return JSONResponse({
            "server": config.server_name,
            "version": os.getenv("APP_VERSION", __version__),
            "python": sys.version,
        })

    app.add_route("/version", version, methods=["GET"])
    app.add_route("/healthz", health, methods=["GET"])
    app.mount("/", mcp_http_app)
    return app


def _graceful(*_):
    logger.info("🛑 Received shutdown signal. Shutting down gracefully.")
    sys.exit(0)


def main():
    config = get_config()
    configure_logging(config.settings.logging.level, config.settings.logging.json_lines)
    warnings.filterwarnings("ignore", category=DeprecationWarning)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful)

    logger.info("=" * 70)
    logger.info(f"🚀 MCP Server Starting: {config.server_name}")
    logger.info("=" * 70)

    app = build_app()
    logger.info(f"🌐 Listening on port: {config.server_port}")
    uvicorn.run(app, host="0.0.0.0", port=config.server_port, log_level="info")


if __name__ == "__main__":
    main()
