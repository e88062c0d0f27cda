"""
Command line entry point.

    bgp-alerter check            one reconciliation run (cron)
    bgp-alerter check --watch    run every monitoring.check_interval seconds
    bgp-alerter history          recent route transitions
"""
import argparse
import logging
import sys
import time

from .config import load_config
from .database import get_state_store
from .exceptions import ConfigurationInvalid, StoreUnavailable
from .logging_setup import setup_logging
from .models import validate_prefix
from .monitors.reconcile import build_reconciler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_STORE = 2
EXIT_INTERRUPTED = 130


def print_error(message):
    print(f"ERROR: {message}", file=sys.stderr)


def run_once(reconciler):
    """Runs one pass and maps the outcome to an exit code."""
    try:
        summary = reconciler.run()
    except StoreUnavailable as e:
        print_error(f"State store unavailable, run aborted: {e}")
        return EXIT_STORE

    if summary.prefixes_checked == 0:
        print_error("No prefixes configured for monitoring.")
        return EXIT_CONFIG

    print(f"Monitoring complete. Prefixes checked: {summary.prefixes_checked}, "
          f"changes detected: {summary.changes_detected}")
    if summary.errors:
        print(f"Prefixes skipped after RIPEstat errors: {summary.errors}")
    return EXIT_OK


def watch(reconciler, interval, iterations=None):
    """Runs a pass every `interval` seconds until interrupted."""
    completed = 0
    try:
        while iterations is None or completed < iterations:
            run_once(reconciler)
            completed += 1
            if iterations is None or completed < iterations:
                time.sleep(interval)
    except KeyboardInterrupt:
        print("Interrupted, stopping.")
        return EXIT_INTERRUPTED
    return EXIT_OK


def cmd_check(args, config, store):
    reconciler = build_reconciler(config, store)
    if args.watch:
        return watch(reconciler, config['monitoring']['check_interval'])
    return run_once(reconciler)


def cmd_history(args, config, store):
    prefix = None
    if args.prefix:
        try:
            prefix = validate_prefix(args.prefix)
        except ValueError as e:
            print_error(f"Invalid prefix {args.prefix}: {e}")
            return EXIT_CONFIG

    try:
        entries = store.get_history(prefix=prefix, limit=args.limit)
    except StoreUnavailable as e:
        print_error(str(e))
        return EXIT_STORE

    if not entries:
        print("No route changes recorded.")
    for entry in entries:
        print(f"{entry.detected_at:%Y-%m-%d %H:%M:%S} UTC  {entry.prefix}  [{entry.status.value}]")
        print(f"    previous: {entry.previous_path}")
        print(f"    current:  {entry.current_path}")
    return EXIT_OK


def build_parser():
    parser = argparse.ArgumentParser(
        prog='bgp-alerter',
        description='Watch the best BGP path of IP prefixes and alert on changes.',
    )
    parser.add_argument('--config', metavar='PATH', help='config.json to use')
    parser.add_argument('-v', '--verbose', action='store_true', help='enable debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)

    check = subparsers.add_parser('check', help='reconcile all monitored prefixes')
    check.add_argument('--watch', action='store_true',
                       help='keep running every monitoring.check_interval seconds')
    check.set_defaults(func=cmd_check)

    history = subparsers.add_parser('history', help='show recent route changes')
    history.add_argument('--prefix', help='only this prefix')
    history.add_argument('--limit', type=int, default=20, metavar='N')
    history.set_defaults(func=cmd_history)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationInvalid as e:
        print_error(str(e))
        return EXIT_CONFIG

    setup_logging('DEBUG' if args.verbose else config['logging']['level'], config['logging']['file'])

    try:
        store = get_state_store(config)
    except StoreUnavailable as e:
        print_error(str(e))
        return EXIT_STORE

    try:
        return args.func(args, config, store)
    finally:
        store.close()


if __name__ == '__main__':
    sys.exit(main())
