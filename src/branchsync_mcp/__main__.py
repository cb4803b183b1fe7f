"""Entry point for running the Branch Sync MCP server via python -m branchsync_mcp"""

import sys

if sys.version_info < (3, 10):
    print(
        f"Branch Sync MCP requires Python 3.10+; found {sys.version.split()[0]}",
        file=sys.stderr,
    )
    sys.exit(1)

from .server import main

if __name__ == "__main__":
    main()
