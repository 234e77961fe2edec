"""Command line entry point"""

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from .config import Config
from .errors import KsRewardsError
from .log import Colors, log_section, setup_logging
from .queue import DEFAULT_PRIORITY
from .scheduler import TaskScheduler
from .service import RewardsService

logger = logging.getLogger("ksrewards")


def setup_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ksrewards",
        description="Discover, validate and redeem Kingshot gift codes for registered accounts",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose mode")
    parser.add_argument("--env-file", default=".env", help="Settings file (default: .env)")
    parser.add_argument("--no-color", dest="color", action="store_false", help="Plain log output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    commands.add_parser("run", help="Run the scheduler until interrupted")
    commands.add_parser("discover", help="Fetch new gift codes from the feed")

    validate = commands.add_parser("validate", help="Validate pending codes, or one code")
    validate.add_argument("code", nargs="?", help="Validate only this code")

    process = commands.add_parser("process", help="Process one batch of the redemption queue")
    process.add_argument("--batch-size", type=int, default=None, help="Items to process (default: BATCH_SIZE)")

    enqueue = commands.add_parser("enqueue-all", help="Queue validated codes for every active account")
    enqueue.add_argument("--priority", type=int, default=DEFAULT_PRIORITY)

    register = commands.add_parser("register", help="Register an account and redeem its missing codes")
    register.add_argument("fid", help="Player ID")

    add_code = commands.add_parser("add-code", help="Add a gift code by hand")
    add_code.add_argument("code")

    commands.add_parser("backup", help="Create a database backup now")
    commands.add_parser("stats", help="Show account, code, queue and redemption counts")

    return parser


def _run_scheduler(config: Config, service: RewardsService) -> int:
    for key, value in config.summary().items():
        logger.info(f"  {Colors.CYAN}{key}:{Colors.END} {value}")

    service.recover()
    scheduler = TaskScheduler(config, service)
    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        scheduler.stop()
    return 0


def _print_stats(service: RewardsService):
    stats = service.dashboard()
    for section, counts in stats.items():
        line = ", ".join(f"{key} {value}" for key, value in counts.items())
        logger.info(f"{Colors.BOLD}{section.capitalize()}:{Colors.END} {line}")


def run_command(args: argparse.Namespace, config: Config, service: RewardsService) -> int:
    command = args.command

    if command == "run":
        return _run_scheduler(config, service)

    if command == "discover":
        result = service.discover_codes()
        logger.info(f"New: {result['new']}, Existing: {result['existing']}, Total: {result['total']}")
    elif command == "validate":
        if args.code:
            classification = service.validate_one_code(args.code)
            logger.info(f"{args.code.upper()}: {classification.value}")
        else:
            result = service.validate_pending_codes()
            logger.info(
                f"Processed: {result['processed']}, Valid: {result['valid']}, "
                f"Invalid: {result['invalid']}, Uncertain: {result['uncertain']}"
            )
    elif command == "process":
        result = service.process_queue(args.batch_size)
        logger.info(f"Processed: {result['processed']}, Success: {result['success']}, Failed: {result['failed']}")
    elif command == "enqueue-all":
        queued = service.enqueue_validated_for_all(args.priority)
        logger.info(f"Queued {queued} redemptions")
    elif command == "register":
        registration = service.register_account(args.fid)
        account = registration.account
        if registration.created:
            logger.info(
                f"Registered {account.fid} ({account.nickname}): "
                f"{registration.redeemed}/{registration.queued} codes redeemed"
            )
        else:
            logger.info(f"Account {account.fid} ({account.nickname}) already registered")
    elif command == "add-code":
        code = service.add_code(args.code)
        logger.info(f"Added {code}")
    elif command == "backup":
        path = service.create_backup()
        logger.info(f"Backup written to {path}")
    elif command == "stats":
        _print_stats(service)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point"""
    args = setup_argparser().parse_args(argv)
    config = Config(env_file=args.env_file)
    setup_logging(verbose=args.verbose or config.verbose, use_colors=args.color)

    log_section(logger, f"KS Rewards v{__version__}", show_time=True)

    service = RewardsService(config)
    try:
        return run_command(args, config, service)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except KsRewardsError as e:
        logger.error(str(e))
        return 1
    finally:
        service.stop()


if __name__ == "__main__":
    sys.exit(main())
