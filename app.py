#!/usr/bin/env python3
"""
IBC Relay Monitor - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Wires metrics ingestion, channel resolution and the clearing
engine into one aiohttp service.

- Configuration comes from the environment (.env is loaded)
- CLI flags override the listen address and logging
- Expired clearing tokens are swept, finished ones purged,
  in the background
- SIGINT / SIGTERM shut the service down cleanly

============================================================
USAGE
============================================================
Direct execution:
    python app.py --port 8080

With PM2:
    pm2 start app.py --interpreter python --name relay-monitor

Follow a clearing token until it finishes:
    python app.py --watch <token>

Check configuration only:
    python app.py --check-config

============================================================
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from aiohttp import web

from core import AppConfig, ConfigurationError, setup_logging
from core.config import load_chain_endpoints
from metrics_ingestion import MetricsSource, MetricsIngestionService
from channel_resolver import ChainEndpointRegistry, ChannelResolver
from clearing import (
    ClearingConfig,
    ClearingEngine,
    ClearingState,
    ClearingStatus,
    ChainPaymentVerifier,
    HermesDispatcher,
    PollTimeout,
    TokenNotFound,
    TokenSigner,
)
from dashboard_api import ClearingStatusClient, RelayMonitorAPI, create_app


logger = logging.getLogger("relay-monitor")


SWEEP_INTERVAL_SECONDS = 15.0


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="relay-monitor",
        description="IBC relay monitoring and paid packet clearing service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  METRICS_URL, CHAIN_ENDPOINTS, HERMES_URL, CLEARING_SECRET_KEY,
  SERVICE_ADDRESS, TOKEN_TTL_SECONDS, POLL_INTERVAL_SECONDS,
  POLL_MAX_ATTEMPTS, API_HOST, API_PORT, LOG_LEVEL

Examples:
  %(prog)s                          # Serve with settings from .env
  %(prog)s --port 9000 --log-format json
  %(prog)s --check-config           # Validate settings and exit
  %(prog)s --watch <token>          # Follow a clearing token
        """
    )

    parser.add_argument("--env-file", type=str, default=None, help="Path to a .env file")
    parser.add_argument("--host", type=str, default=None, help="Listen host (default: API_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: API_PORT)")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: LOG_LEVEL)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        choices=["text", "json"],
        default=None,
        help="Log format (default: LOG_FORMAT)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate configuration and exit",
    )
    parser.add_argument(
        "--watch",
        type=str,
        default=None,
        metavar="TOKEN",
        help="Follow a clearing token on a running service until it finishes",
    )
    parser.add_argument(
        "--api-url",
        type=str,
        default=None,
        help="Service URL for --watch (default: http://API_HOST:API_PORT)",
    )
    return parser


def build_config(args: argparse.Namespace) -> AppConfig:
    """Environment configuration with CLI overrides applied."""
    config = AppConfig.from_env(args.env_file)
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format
    return config


# ============================================================
# SERVICE WIRING
# ============================================================

@dataclass
class Services:
    """Every long-lived component, for wiring and shutdown."""

    ingestion: MetricsIngestionService
    resolver: ChannelResolver
    engine: ClearingEngine
    dispatcher: HermesDispatcher
    verifier: ChainPaymentVerifier
    api: RelayMonitorAPI

    async def close(self) -> None:
        await self.engine.close()
        await self.dispatcher.close()
        await self.verifier.close()
        await self.ingestion.close()
        await self.resolver.close()


def build_services(config: AppConfig) -> Services:
    """Construct and connect all components from configuration."""
    registry = ChainEndpointRegistry(
        endpoints=config.chain_endpoints,
        loader=lambda: load_chain_endpoints(os.getenv("CHAIN_ENDPOINTS", "")),
    )
    resolver = ChannelResolver(
        registry,
        batch_size=config.resolver_batch_size,
        lookup_timeout=config.request_timeout_seconds,
    )
    ingestion = MetricsIngestionService(
        MetricsSource(config.metrics_url, timeout=config.request_timeout_seconds),
        resolver=resolver,
    )

    verifier = ChainPaymentVerifier(
        registry.lookup,
        config.service_address,
        timeout=config.request_timeout_seconds,
    )
    dispatcher = HermesDispatcher(config.hermes_url, timeout=config.request_timeout_seconds)
    engine = ClearingEngine(
        signer=TokenSigner(config.clearing_secret_key),
        payment_verifier=verifier,
        dispatcher=dispatcher,
        config=ClearingConfig(
            token_ttl_seconds=config.token_ttl_seconds,
            dispatch_timeout_seconds=config.dispatch_timeout_seconds,
        ),
    )

    api = RelayMonitorAPI(
        ingestion=ingestion,
        resolver=resolver,
        engine=engine,
        service_address=config.service_address,
    )
    return Services(
        ingestion=ingestion,
        resolver=resolver,
        engine=engine,
        dispatcher=dispatcher,
        verifier=verifier,
        api=api,
    )


def sweep_once(engine: ClearingEngine) -> Tuple[int, int]:
    """Fail expired pending tokens, then forget finished ones past retention."""
    expired = engine.sweep_expired()
    purged = engine.purge_terminal()
    if expired or purged:
        logger.info(f"[sweeper] Expired {expired} pending tokens, purged {purged}")
    return expired, purged


async def sweep_loop(engine: ClearingEngine, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
    """Run sweep_once() every interval seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            sweep_once(engine)
        except Exception as e:
            logger.error(f"[sweeper] Sweep failed: {e}", exc_info=True)


# ============================================================
# TOKEN WATCH
# ============================================================

def build_status_client(config: AppConfig, base_url: Optional[str] = None) -> ClearingStatusClient:
    """Status client for a running service, with the configured polling fallback."""
    if base_url is None:
        host = "127.0.0.1" if config.api_host in ("", "0.0.0.0") else config.api_host
        base_url = f"http://{host}:{config.api_port}"
    return ClearingStatusClient(
        base_url,
        poll_interval=config.poll_interval_seconds,
        poll_max_attempts=config.poll_max_attempts,
        timeout=config.request_timeout_seconds,
    )


async def watch_token(config: AppConfig, token: str, base_url: Optional[str] = None) -> int:
    """
    Print every status change of a token until it finishes.

    Returns:
        0 when the token completed, 1 otherwise
    """
    def show(status: ClearingStatus) -> None:
        reason = f" ({status.failure_reason.value})" if status.failure_reason else ""
        print(f"{status.token}: {status.state.value}{reason} {status.message}".rstrip())

    async with build_status_client(config, base_url) as client:
        try:
            final = await client.wait_for_completion(token, on_update=show)
        except (TokenNotFound, PollTimeout) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    return 0 if final.state is ClearingState.COMPLETED else 1


# ============================================================
# MAIN FUNCTION
# ============================================================

async def run_application(config: AppConfig) -> int:
    """
    Serve until a shutdown signal arrives.

    Returns:
        Exit code
    """
    services = build_services(config)
    app = create_app(services.api)
    runner = web.AppRunner(app)
    sweeper: Optional[asyncio.Task] = None

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    try:
        await runner.setup()
        site = web.TCPSite(runner, config.api_host, config.api_port)
        await site.start()
        logger.info(f"Relay monitor listening on {config.api_host}:{config.api_port}")

        sweeper = asyncio.create_task(sweep_loop(services.engine))
        await stop.wait()
        logger.info("Shutdown requested")
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        if sweeper is not None:
            sweeper.cancel()
        await runner.cleanup()
        await services.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = create_parser().parse_args(argv)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_level, config.log_format)

    if args.watch:
        return asyncio.run(watch_token(config, args.watch, args.api_url))

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    if args.check_config:
        print(f"Configuration OK ({len(config.chain_endpoints)} chain endpoints)")
        return 0

    return asyncio.run(run_application(config))


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
