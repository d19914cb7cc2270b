import sys

from mcp_session_gateway.cli import main

sys.exit(main())
