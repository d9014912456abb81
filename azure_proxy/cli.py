"""Command-line launcher: resolve settings, validate them, serve with uvicorn."""
from __future__ import annotations

import argparse
import logging

import uvicorn

from .app import create_app
from .config import ConfigurationError, ProxySettings

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8112
DEFAULT_DEBUG_PATH = "/tmp/debug_azureproxy.log"

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


def _debug_target(debug_arg: str | None, env_path: str | None) -> tuple[bool, str]:
    """``--debug`` switches SSE logging on; an empty value keeps the env/default path."""
    if debug_arg is None:
        return False, env_path or DEFAULT_DEBUG_PATH
    return True, debug_arg.strip() or env_path or DEFAULT_DEBUG_PATH


def _build_settings(args: argparse.Namespace) -> ProxySettings:
    settings = ProxySettings.from_env()
    settings.host = args.host or DEFAULT_HOST
    settings.port = args.port or DEFAULT_PORT
    if args.deployment:
        settings.azure_deployment = args.deployment
    if args.api_version:
        settings.azure_api_version = args.api_version
    if args.timeout:
        settings.request_timeout = args.timeout
    settings.debug_sse_enabled, settings.debug_sse_path = _debug_target(args.debug, settings.debug_sse_path)
    return settings


def _log_configuration(settings: ProxySettings) -> None:
    logger.info("Initializing Azure Reasoning Proxy ...")
    logger.info(
        "✓ Listening on %s:%s → %s deployment=%s api_version=%s timeout=%ss sse_debug=%s",
        settings.host,
        settings.port,
        settings.azure_endpoint,
        settings.azure_deployment,
        settings.azure_api_version,
        settings.request_timeout,
        settings.debug_sse_path if settings.debug_sse_enabled else "off",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Serve an OpenAI Chat Completions endpoint backed by an Azure Responses deployment",
        epilog="Backend credentials come from AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY and AZURE_OPENAI_DEPLOYMENT.",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="Interface to bind (default: %(default)s)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to bind (default: %(default)s)")
    parser.add_argument("--deployment", help="Azure deployment name, overrides AZURE_OPENAI_DEPLOYMENT")
    parser.add_argument("--api-version", help="Responses API version, overrides AZURE_OPENAI_API_VERSION")
    parser.add_argument("--timeout", type=float, help="Backend request timeout in seconds")
    parser.add_argument(
        "--debug",
        nargs="?",
        const="",
        metavar="PATH",
        help="Record raw backend SSE traffic to PATH (default: PROXY_DEBUG_SSE_PATH or %s)" % DEFAULT_DEBUG_PATH,
    )
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        settings = _build_settings(args)
        # Fail here so uvicorn never starts with a half-configured backend.
        settings.validate()
    except ConfigurationError as err:
        logger.error("[!] Configuration error: %s", err)
        raise SystemExit(1)

    _log_configuration(settings)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    run()
