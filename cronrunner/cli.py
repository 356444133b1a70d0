"""
Command-line interface for the cron runner.

Usage:
    cronrunner [options] <schedule> <command> [args ...]
    cronrunner version

Everything after <command> is passed to the command unchanged.
Exit codes: 0 after shutdown (clean or forced), 1 on usage, configuration
or schedule errors.
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import structlog

import cronrunner
from cronrunner.config import LOG_FORMATS, ConfigError, RunnerConfig, parse_timeout
from cronrunner.schedule import InvalidScheduleError
from cronrunner.service import CronRunner

logger = logging.getLogger(__name__)

# Handlers added by setup_logging(), removed again on reconfiguration
_installed_handlers: List[logging.Handler] = []


def _record_level(_logger, _method_name, event_dict):
    event_dict['level'] = event_dict['_record'].levelname
    return event_dict


def _drop_formatter_text(_logger, _method_name, event_dict):
    # Set on the record by plain logging.Formatter instances on other handlers
    event_dict.pop('message', None)
    event_dict.pop('asctime', None)
    return event_dict


def _pre_chain(time_key: str) -> list:
    """Processors applied to records from stdlib loggers."""
    return [
        structlog.processors.TimeStamper(fmt='iso', utc=False, key=time_key),
        _record_level,
        structlog.stdlib.ExtraAdder(),
        _drop_formatter_text,
    ]


def json_formatter() -> logging.Formatter:
    """One JSON object per line: time, level, msg and any extra= fields."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain('time'),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer('msg'),
            structlog.processors.JSONRenderer(),
        ],
    )


def text_formatter() -> logging.Formatter:
    """Human-readable lines with extra= fields appended as key=value."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain('timestamp'),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    stream=None
):
    """Setup logging configuration."""
    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
    _installed_handlers.clear()

    formatter = json_formatter() if log_format == "json" else text_formatter()

    # Console handler
    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    _installed_handlers.append(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        _installed_handlers.append(file_handler)

    root_logger.setLevel(level)
    for handler in _installed_handlers:
        root_logger.addHandler(handler)


def show_version():
    """Print build information to stdout."""
    print(f"cronrunner version {cronrunner.__version__}")
    print(f"commit: {cronrunner.COMMIT}")
    print(f"built: {cronrunner.BUILD_DATE}")
    print(f"built by: {cronrunner.BUILT_BY}")


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="cronrunner",
        description="Run a command on a cron schedule and wait for running jobs on shutdown",
        epilog="Use 'cronrunner version' to print build information.",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--shutdown-timeout',
        type=str,
        metavar='SECONDS',
        help='Maximum time to wait for running jobs on shutdown (default: wait forever)'
    )
    parser.add_argument(
        '--log-level',
        type=str.upper,
        help='Log level (default: INFO)'
    )
    parser.add_argument(
        '--log-format',
        choices=LOG_FORMATS,
        help='Log line format (default: json)'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help='Also write logs to this file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable debug logging'
    )

    parser.add_argument('schedule', help='Cron expression, e.g. "*/5 * * * *" or "@every 1m"')
    parser.add_argument('command', help='Command to run on each fire')
    parser.add_argument('args', nargs=argparse.REMAINDER, help='Arguments passed to the command')

    return parser


def load_config(args: argparse.Namespace) -> RunnerConfig:
    """
    Resolve configuration from the environment and command-line options.

    Raises:
        ConfigError: If a value is invalid
    """
    config = RunnerConfig.from_env()

    if args.shutdown_timeout is not None:
        # "none" on the command line must be able to clear an env timeout
        config = replace(config, shutdown_timeout=parse_timeout(args.shutdown_timeout))

    config = config.override(
        log_level="DEBUG" if args.verbose else args.log_level,
        log_format=args.log_format,
        log_file=args.log_file,
    )

    errors = config.validate()
    if errors:
        raise ConfigError("; ".join(errors))
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    argv = sys.argv[1:] if argv is None else list(argv)

    if argv and argv[0] == 'version':
        show_version()
        return 0

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"cronrunner: invalid configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_level, config.log_format, config.log_file)

    try:
        runner = CronRunner(
            args.schedule,
            args.command,
            args.args,
            shutdown_timeout=config.shutdown_timeout
        )
    except InvalidScheduleError as e:
        logger.error("failed to create scheduler", extra={'error': str(e)})
        return 1

    runner.install_signal_handlers()
    runner.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
