
import click
import uvicorn

from mcp_session_gateway.server.app import create_app
from mcp_session_gateway.server.engine import ExampleEngine
from mcp_session_gateway.settings import GatewaySettings
from mcp_session_gateway.utilities.logging import configure_logging, get_logger

logger = get_logger(__name__)


@click.command()
@click.option("--host", default=None, help="Interface to bind to")
@click.option("--port", type=int, default=None, help="Port to listen on for HTTP (default: $PORT or 3000)")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Logging level",
)
@click.option(
    "--json-response/--no-json-response",
    default=None,
    help="Answer streamable HTTP requests with JSON instead of SSE streams",
)
def main(host: str | None, port: int | None, log_level: str | None, json_response: bool | None) -> int:
    overrides = {
        "host": host,
        "port": port,
        "log_level": log_level.upper() if log_level else None,
        "json_response": json_response,
    }
    settings = GatewaySettings(**{key: value for key, value in overrides.items() if value is not None})

    configure_logging(settings.log_level)

    app = create_app(ExampleEngine(), settings)

    logger.info(f"MCP session gateway listening on port {settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())

    return 0
