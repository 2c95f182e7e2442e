"""GRC importer MCP server entry point.

Creates the main ``FastMCP`` instance and registers the import and linking
tools. Run this module directly to start the server in STDIO mode.
"""

import logging
import os
import sys

from mcp.server.fastmcp import FastMCP

# Log to stderr: with the STDIO transport stdout carries the JSON-RPC stream.
logging.basicConfig(
    level=os.getenv("GRC_IMPORTER_LOG_LEVEL", "INFO").upper(),
    stream=sys.stderr,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)

mcp = FastMCP(
    name="grc-importer",
    instructions="""
    You are connected to a GRC compliance importer.

    Use the available tools to turn regulatory text into compliance requirements:
    - Start an import session (bulk for CSV/Excel/JSON, rich for Excel/Word/URL/text)
    - Parse a file, a web page, or pasted text/HTML into requirement candidates
    - Review the dry-run summary and fix or exclude invalid candidates
    - Link candidates to existing or newly created risks and controls
    - Commit: frameworks are created or updated by code, requirements are
      upserted by (framework, requirement_code), so re-importing is safe

    Key concepts:
    - Framework: a named body of rules (e.g. ISO27001-2022)
    - Requirement: one obligation within a framework
    - Candidate: a parsed requirement that has not been committed yet
    - Dry run: validation counts computed before anything is written
    """,
)

from grc_importer.tools.imports import register_tools as _register_imports  # noqa: E402
from grc_importer.tools.linking import register_tools as _register_linking  # noqa: E402

_register_imports(mcp)
_register_linking(mcp)

logger.info("GRC importer MCP server initialised with %d tools", len(mcp._tool_manager.list_tools()))


def main() -> None:
    """Start the MCP server using the transport from ``GRC_IMPORTER_TRANSPORT``."""
    transport = os.getenv("GRC_IMPORTER_TRANSPORT", "stdio")
    logger.info("Starting GRC importer MCP server (transport=%s)", transport)
    mcp.run(transport=transport)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
