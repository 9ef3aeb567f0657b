"""Main entry point for the apistash application.

Sets up the Typer CLI application, performs dependency injection (Composition Root),
defines CLI commands, and delegates execution to the CommandHandler.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Optional

import typer

from apistash import __version__
from apistash.core.command_handler import CommandHandler
from apistash.core.exceptions import ApiStashError
from apistash.core.services.request_orchestrator import OrchestratorConfig, RequestOrchestrator
from apistash.domain.interfaces.codec import SUPPORTED_FORMATS
from apistash.domain.models.request import ApiRequest
from apistash.infrastructure.cache.backends import create_backend
from apistash.infrastructure.cache.cache_store import DEFAULT_MAX_ENTRIES, CacheStore
from apistash.infrastructure.cache.compressor import DataCompressor
from apistash.infrastructure.cache.serializers import get_serializer
from apistash.infrastructure.cli.display import ConsoleDisplay
from apistash.infrastructure.codec.payload_codec import DefaultPayloadCodec
from apistash.infrastructure.config.settings import (
    DEFAULT_CONFIG_DIR, get_bool, get_config, get_float, get_int, load_configuration, set_config
)
from apistash.infrastructure.monitoring.logger_setup import resolve_level, setup_logging
from apistash.infrastructure.resilience.rate_limiter import RateLimiter, WindowStateFile
from apistash.infrastructure.transport.http_transport import DEFAULT_TIMEOUT_SECONDS, HttpTransport

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = DEFAULT_CONFIG_DIR / "rate_limit.json"

# --- Dependency Injection Container (Manual) ---


def create_dependencies() -> Dict[str, Any]:
    """Creates and wires up all dependencies for the application.

    This acts as the Composition Root.
    """
    # 1. Load Configuration First
    load_configuration()
    setup_logging(
        log_level=resolve_level(get_config("logging.level")),
        log_format=get_config("logging.format"),
        log_file=get_config("logging.file"),
        quiet_libraries=get_bool("logging.quiet_libraries", True),
    )
    logger.info("Initializing application dependencies...")

    dependencies: Dict[str, Any] = {"ui": ConsoleDisplay()}
    try:
        config = OrchestratorConfig.from_settings()

        # 2. Cache
        cache_store: Optional[CacheStore] = None
        if config.cache_enabled:
            backend = create_backend(
                get_config("cache.backend", "filesystem"),
                directory=get_config("cache.directory"),
                redis_url=get_config("cache.redis_url"),
                namespace=get_config("cache.namespace"),
            )
            cache_store = CacheStore(
                backend,
                compressor=DataCompressor() if get_bool("cache.compress", True) else None,
                serializer=get_serializer(get_config("cache.serializer", "json")),
                max_entries=get_int("cache.max_entries", DEFAULT_MAX_ENTRIES),
                default_ttl=config.cache_ttl_seconds,
            )
        dependencies["cache_store"] = cache_store

        # 3. Resilience
        state_path = get_config("rate_limit.state_file", str(DEFAULT_STATE_FILE))
        dependencies["rate_limiter"] = RateLimiter(
            limit=config.rate_limit.count,
            window_seconds=config.rate_limit.window_seconds,
            state_file=WindowStateFile(Path(state_path).expanduser()) if state_path else None,
        )

        # 4. Orchestrator and its collaborators
        dependencies["orchestrator"] = RequestOrchestrator.from_config(
            config,
            cache_store=cache_store,
            transport=HttpTransport(timeout=get_float("request.timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            codec=DefaultPayloadCodec(),
            rate_limiter=dependencies["rate_limiter"],
        )

        # 5. Command Handler
        dependencies["command_handler"] = CommandHandler(
            orchestrator=dependencies["orchestrator"],
            cache_store=cache_store,
            rate_limiter=dependencies["rate_limiter"],
            ui=dependencies["ui"],
        )
    except ApiStashError as e:
        logger.error(f"Fatal Error during application initialization: {e}", exc_info=True)
        dependencies["ui"].display_error(f"Application Initialization Failed: {e}")
        raise typer.Exit(code=1)

    logger.info("All dependencies initialized successfully.")
    return dependencies


# Holds the single instances of our services once a command needs them
_dependencies: Optional[Dict[str, Any]] = None


def get_dependencies() -> Dict[str, Any]:
    global _dependencies
    if _dependencies is None:
        _dependencies = create_dependencies()
    return _dependencies


# --- Typer App Definition ---
app = typer.Typer(
    name="apistash",
    help="apistash: rate-limited, cached and retried outbound API calls.",
    add_completion=False,
)
cache_app = typer.Typer(help="Inspect and manage the response cache.")
limiter_app = typer.Typer(help="Inspect and reset the rate limiter window.")
app.add_typer(cache_app, name="cache")
app.add_typer(limiter_app, name="limiter")


# --- Helper for Running Async Commands ---

def run_command(action: Callable[[CommandHandler], Awaitable[int]]) -> None:
    """Runs an async handler method and turns its result into the exit code."""
    dependencies = get_dependencies()
    handler: CommandHandler = dependencies["command_handler"]
    cache_store: Optional[CacheStore] = dependencies.get("cache_store")

    async def runner() -> int:
        try:
            return await action(handler)
        finally:
            if cache_store is not None:
                await cache_store.close()

    try:
        exit_code = asyncio.run(runner())
    except ApiStashError as e:
        logger.error(f"Command failed: {e}")
        dependencies["ui"].display_error(str(e))
        exit_code = 1
    except Exception as e:
        logger.error(f"Error executing async command: {e}", exc_info=True)
        dependencies["ui"].display_error(f"Command execution failed: {e}")
        exit_code = 1

    if exit_code:
        raise typer.Exit(code=exit_code)


def parse_pairs(pairs: Optional[List[str]], option: str) -> Dict[str, str]:
    """Parses repeated ``key=value`` options into a mapping."""
    parsed: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'.", param_hint=option)
        parsed[key] = value
    return parsed


# --- CLI Commands ---

@app.command()
def request(
    url: Annotated[str, typer.Argument(help="URL to call.")],
    method: Annotated[str, typer.Option("--method", "-X", help="HTTP method.")] = "GET",
    param: Annotated[Optional[List[str]], typer.Option("--param", "-p", help="Query parameter key=value (repeatable).")] = None,
    header: Annotated[Optional[List[str]], typer.Option("--header", "-H", help="Header key=value (repeatable).")] = None,
    body: Annotated[Optional[str], typer.Option("--body", "-d", help="Request body.")] = None,
    response_format: Annotated[Optional[str], typer.Option("--format", "-f", help="Validate and parse the response as json, xml or html.")] = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Bypass the response cache for this call.")] = False,
):
    """Perform one rate-limited, cached and retried API call."""
    if response_format and response_format.lower() not in SUPPORTED_FORMATS:
        raise typer.BadParameter(f"Expected one of {', '.join(SUPPORTED_FORMATS)}.", param_hint="--format")
    api_request = ApiRequest(
        url=url,
        method=method.upper(),
        params=parse_pairs(param, "--param"),
        headers=parse_pairs(header, "--header"),
        body=body,
        use_cache=not no_cache,
        response_format=response_format.lower() if response_format else None,
    )
    run_command(lambda handler: handler.handle_request(api_request))


@app.command()
def batch(
    file: Annotated[Path, typer.Argument(exists=True, file_okay=True, dir_okay=False, readable=True,
                                         resolve_path=True, help="YAML or JSON list of request mappings.")],
    concurrency: Annotated[Optional[int], typer.Option("--concurrency", "-c", min=1, help="Items in flight at once.")] = None,
):
    """Send every request in FILE; failures are reported per item."""
    run_command(lambda handler: handler.handle_batch(file, concurrency))


@cache_app.command("get")
def cache_get(key: Annotated[str, typer.Argument(help="Cache key.")]):
    """Show the live value stored under KEY."""
    run_command(lambda handler: handler.handle_cache_get(key))


@cache_app.command("put")
def cache_put(
    key: Annotated[str, typer.Argument(help="Cache key.")],
    value: Annotated[str, typer.Argument(help="Value to store.")],
    ttl: Annotated[Optional[float], typer.Option("--ttl", min=0, help="Time to live in seconds.")] = None,
):
    """Store VALUE under KEY."""
    run_command(lambda handler: handler.handle_cache_put(key, value, ttl))


@cache_app.command("clear")
def cache_clear(key: Annotated[Optional[str], typer.Argument(help="Key to clear; every entry if omitted.")] = None):
    """Remove one entry, or every entry."""
    run_command(lambda handler: handler.handle_cache_clear(key))


@cache_app.command("purge")
def cache_purge():
    """Remove expired and unreadable entries."""
    run_command(lambda handler: handler.handle_cache_purge())


@cache_app.command("stats")
def cache_stats():
    """Show cache backend and occupancy."""
    run_command(lambda handler: handler.handle_cache_stats())


@limiter_app.command("status")
def limiter_status():
    """Show the current rate limiter window."""
    run_command(lambda handler: handler.handle_limiter_status())


@limiter_app.command("reset")
def limiter_reset():
    """Clear the rate limiter window."""
    run_command(lambda handler: handler.handle_limiter_reset())


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"apistash {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[Optional[bool], typer.Option("--version", callback=_version_callback, is_eager=True,
                                                    help="Show the version and exit.")] = None,
    log_level: Annotated[Optional[str], typer.Option("--log-level", "-l",
                                                     help="Logging level for this run (e.g. debug, info).")] = None,
):
    """apistash: rate-limited, cached and retried outbound API calls."""
    if log_level:
        set_config("logging.level", log_level)


# --- Main Execution Guard ---

def cli_entry_point():
    """Function to be called by the script entry point in pyproject.toml."""
    try:
        app()
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    cli_entry_point()
