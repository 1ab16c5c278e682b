"""CLI entry point: load configuration, then serve over stdio or HTTP."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

from keycloak_infisical_mcp.config import TRANSPORTS, ConfigError, Settings, load_settings

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    # stdout belongs to the stdio transport; all log output goes to stderr.
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {
        name: value
        for name, value in (("transport", args.mode), ("host", args.host), ("port", args.port))
        if value is not None
    }
    return dataclasses.replace(settings, **overrides) if overrides else settings


def main() -> None:
    parser = argparse.ArgumentParser(
        description="MCP server exposing Keycloak and Infisical as tools and resources",
    )
    parser.add_argument(
        "--mode",
        choices=TRANSPORTS,
        default=None,
        help="Transport to serve on (default: MCP_TRANSPORT or stdio)",
    )
    parser.add_argument("--host", default=None, help="Bind address in http mode (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Port in http mode (default: 8000)")
    parser.add_argument(
        "--config",
        default=None,
        help="Optional settings.yaml; environment variables take precedence",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    _configure_logging(args.verbose)

    try:
        settings = _apply_overrides(load_settings(config_path=args.config), args)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)

    if settings.keycloak_credential() is None and settings.infisical_credential() is None:
        logger.warning("Neither Keycloak nor Infisical is configured; no tools will be available")

    from keycloak_infisical_mcp.auth.session_manager import SessionManager
    from keycloak_infisical_mcp.policy.registry import CapabilityRegistry

    manager = SessionManager(settings)
    registry = CapabilityRegistry()

    if settings.transport == "http":
        import uvicorn

        from keycloak_infisical_mcp.mcp.http_app import create_app

        app = create_app(settings, manager, registry)
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    else:
        from keycloak_infisical_mcp.mcp.base_server import run_stdio

        logger.info("Serving MCP over stdio")
        asyncio.run(run_stdio(manager, registry))


if __name__ == "__main__":
    main()
