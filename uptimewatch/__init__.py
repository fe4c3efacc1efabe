"""uptimewatch - website uptime monitoring with rate-limited alerts."""

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Optional

__version__ = "0.1.0"

DEFAULT_CONFIG_PATH = "config.yaml"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _resolve_config_path(config_path: Optional[str]) -> Optional[str]:
    """Use the given path, else config.yaml when present, else environment only."""
    if config_path is not None:
        return config_path
    if Path(DEFAULT_CONFIG_PATH).exists():
        return DEFAULT_CONFIG_PATH
    return None


def _load_config_or_exit(args: argparse.Namespace):
    from .config import ConfigError, load_config

    config_path = _resolve_config_path(args.config)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    logger.info("Configuration loaded from %s", config_path or "environment")
    return config


def _open_core_or_exit(config):
    from .config import ConfigError
    from .core import MonitorCore
    from .store import PersistenceError

    try:
        core = MonitorCore.from_config(config)
    except (ConfigError, PersistenceError) as e:
        logger.error("Failed to initialize storage: %s", e)
        sys.exit(1)

    logger.info("Using %s storage at %s", config.storage.backend, config.storage.path)
    return core


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the monitoring service."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("uptimewatch %s starting...", __version__)

    # Import here to allow logging setup first
    from .api import ApiError, ApiServer
    from .monitor import Monitor

    # 1. Load configuration and open storage
    config = _load_config_or_exit(args)
    logger.info("Monitoring %d sites at %ds interval", len(config.sites), config.monitor.interval)
    core = _open_core_or_exit(config)

    # 2. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    if config.alerts.webhooks:
        logger.info("Alerts configured with %d webhook(s)", len(config.alerts.webhooks))

    # 3. Start components
    monitor = Monitor(config, core)
    api_server: Optional[ApiServer] = None

    try:
        monitor.start()

        if config.api.enabled:
            try:
                api_server = ApiServer(config.api, core, sites_configured=len(config.sites))
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                logger.warning("Continuing without API server")
                api_server = None

        logger.info("All components started, waiting for shutdown signal...")

        # 4. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 5. Cleanup - stop all components
        logger.info("Shutting down components...")

        monitor.stop()

        if api_server is not None:
            api_server.stop()

        core.close()
        logger.info("Shutdown complete")


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - run one pass over every site and exit."""
    _setup_logging(args.verbose)

    from .models import Status
    from .monitor import Monitor

    config = _load_config_or_exit(args)
    core = _open_core_or_exit(config)

    try:
        Monitor(config, core).run_cycle()
        records = core.get_snapshot()
    finally:
        core.close()

    down = [site.url for site in config.sites if site.url in records and records[site.url].status is Status.DOWN]
    print(f"\n{len(config.sites) - len(down)}/{len(config.sites)} sites UP")
    for url in down:
        print(f"DOWN: {url}")

    if down:
        sys.exit(1)


def _cmd_clear(args: argparse.Namespace) -> None:
    """Execute the clear command - reset stored status, metrics and history."""
    _setup_logging(args.verbose)

    config = _load_config_or_exit(args)
    core = _open_core_or_exit(config)

    try:
        cleared = core.clear_all()
    finally:
        core.close()

    if not cleared:
        print("Error: failed to clear stored data")
        sys.exit(1)
    print(f"Cleared status, metrics and history at {config.storage.path}")


def _cmd_test_alert(args: argparse.Namespace) -> None:
    """Execute the test-alert command - verify webhook configuration."""
    _setup_logging(args.verbose)

    from .notifier import Notifier

    config = _load_config_or_exit(args)

    if not config.alerts.webhooks:
        print("Error: No webhooks configured in alerts section")
        sys.exit(1)

    notifier = Notifier.from_config(config.alerts)
    print(f"Testing {len(config.alerts.webhooks)} webhook(s)...\n")

    results = notifier.test_webhooks()

    success_count = sum(1 for success in results.values() if success)
    total_count = len(results)

    for url, success in results.items():
        status = "✓ SUCCESS" if success else "✗ FAILED"
        print(f"{status}: {url}")

    print(f"\nResult: {success_count}/{total_count} webhooks successful")

    if success_count < total_count:
        sys.exit(1)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default=None,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH} if present, "
             f"otherwise UPTIMEWATCH_* environment variables only)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the uptimewatch package."""
    parser = argparse.ArgumentParser(
        description="uptimewatch - website uptime monitoring with rate-limited alerts"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"uptimewatch {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser(
        "run",
        help="Start the monitoring service (default)",
    )
    _add_common_arguments(run_parser)
    run_parser.set_defaults(func=_cmd_run)

    check_parser = subparsers.add_parser(
        "check",
        help="Check every site once, record the results and exit",
    )
    _add_common_arguments(check_parser)
    check_parser.set_defaults(func=_cmd_check)

    clear_parser = subparsers.add_parser(
        "clear",
        help="Reset stored status, metrics and history",
    )
    _add_common_arguments(clear_parser)
    clear_parser.set_defaults(func=_cmd_clear)

    test_alert_parser = subparsers.add_parser(
        "test-alert",
        help="Test webhook alert configuration",
    )
    _add_common_arguments(test_alert_parser)
    test_alert_parser.set_defaults(func=_cmd_test_alert)

    args = parser.parse_args(argv)

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
