"""Entry point for running ticket-bridge.

This module provides the main entry point for ticket-bridge.
It handles:
- Configuration loading
- Logging setup with secret sanitization
- Adapter instantiation
- Service lifecycle management
- Running under the process watchdog (``--supervise``)
"""

import argparse
import asyncio
import sys
from pathlib import Path

import structlog

from ticket_bridge._version import __version__

log = structlog.get_logger()


def setup_logging(
    debug: bool = False,
    log_format: str = "console",
    file_path: Path | None = None,
    file_enabled: bool = False,
) -> None:
    """Configure structured logging with secret sanitization.

    Args:
        debug: Enable debug logging if True
        log_format: Output format ("json" or "console")
        file_path: Path to log file (if file logging enabled)
        file_enabled: Whether to enable file logging
    """
    from ticket_bridge.utils.logging import LogFormat, LogLevel, configure_logging

    level = LogLevel.DEBUG if debug else LogLevel.INFO

    configure_logging(
        level=level,
        log_format=LogFormat(log_format.lower()),
        file_path=file_path,
        file_enabled=file_enabled,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed argument namespace
    """
    parser = argparse.ArgumentParser(
        prog="ticket-bridge",
        description="ticket-bridge - Relay support tickets between Telegram and Slack",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )

    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse config and validate without starting the bridge",
    )

    parser.add_argument(
        "--format",
        choices=["json", "console"],
        default="console",
        help="Log output format (default: console)",
    )

    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Run health check and exit",
    )

    parser.add_argument(
        "--supervise",
        action="store_true",
        help="Run the bridge as a child process under the restart watchdog",
    )

    return parser.parse_args(argv)


def child_command(args: argparse.Namespace) -> list[str]:
    """Command line the watchdog uses to start the bridge process."""
    command = [sys.executable, "-m", "ticket_bridge", "--config", str(args.config)]
    command += ["--format", args.format]
    if args.debug:
        command.append("--debug")
    return command


async def run_bridge(
    config_path: Path,
    dry_run: bool = False,
    health_check: bool = False,
) -> int:
    """Run the bridge service.

    Args:
        config_path: Path to configuration file
        dry_run: If True, only validate config without starting
        health_check: If True, run health check and exit

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    log.info(
        "starting_ticket_bridge",
        version=__version__,
        config_path=str(config_path),
    )

    try:
        from ticket_bridge.config.loader import load_config

        log.info("loading_configuration", path=str(config_path))
        config = load_config(config_path)
        log.info("configuration_loaded")

        # Reconfigure logging from config file settings
        from ticket_bridge.utils.logging import configure_logging

        configure_logging(
            level=config.logging.level,
            log_format=config.logging.format,
            file_path=config.logging.file.path if config.logging.file.enabled else None,
            file_enabled=config.logging.file.enabled,
        )

        if dry_run:
            log.info("dry_run_mode_config_valid")
            return 0

        if health_check:
            from ticket_bridge.utils.health import HealthChecker

            checker = HealthChecker(config)
            result = await checker.run_all_checks()

            if result.healthy:
                log.info("health_check_passed", details=result.details)
                return 0
            log.error("health_check_failed", details=result.to_dict())
            return 1

        from ticket_bridge.core.service import create_service

        log.info("creating_service")
        service = await create_service(config)
        return await service.start()

    except FileNotFoundError as e:
        log.error("configuration_file_not_found", path=str(config_path), error=str(e))
        return 1
    except ValueError as e:
        log.error("configuration_invalid", error=str(e))
        return 1
    except KeyboardInterrupt:
        log.info("keyboard_interrupt_received")
        return 0
    except Exception as e:
        log.exception("fatal_error", error=str(e))
        return 1


async def run_watchdog(args: argparse.Namespace) -> int:
    """Supervise the bridge process with restart backoff.

    Returns:
        Exit code (0 once supervision ends, 1 on bad configuration)
    """
    try:
        from ticket_bridge.config.loader import load_config

        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        log.error("configuration_invalid", error=str(e))
        return 1

    from ticket_bridge.core.watchdog import Watchdog

    watchdog = Watchdog(child_command(args), config.watchdog)
    return await watchdog.run()


def main() -> int:
    """Main entry point."""
    args = parse_args()

    # Setup logging with CLI options
    setup_logging(
        debug=args.debug,
        log_format=args.format,
    )

    try:
        if args.supervise:
            return asyncio.run(run_watchdog(args))
        return asyncio.run(run_bridge(args.config, args.dry_run, args.health_check))
    except KeyboardInterrupt:
        log.info("shutting_down_gracefully")
        return 0


if __name__ == "__main__":
    sys.exit(main())
