#path: query_stats_server/mcp_app.py

import os

from fastmcp import FastMCP


# Single shared instance – everything else will import this
mcp = FastMCP(os.getenv("MCP_SERVER_NAME", "query_stats_mcp"))
