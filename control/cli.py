#!/usr/bin/env python3
"""Command-line interface for batches of plasma NVT ensembles.

Exit statuses:
    0  every ensemble finished
    1  bad or missing run file, bad options, unreadable saved state
    2  no valid run in the run file
    3  at least one ensemble failed
"""

import argparse
import logging
import os
import platform
import signal
import sys

from control.config import ConfigError, NoRunsError, load_configs
from control.controller import REFRESH_DELAY, SAVE_ENERGIES_INT, EnsembleController

logger = logging.getLogger("plasma")

CONFIG_FILE = "mk_config.yaml"

EXIT_OK = 0
EXIT_BAD_CONFIG = 1
EXIT_NO_RUNS = 2
EXIT_FAILED = 3


def setup_logging(level="INFO", log_file=None):
    """Console logging, plus a DEBUG file log if ``log_file`` is given. Returns the handlers added."""
    formatter = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, level.upper()))
    console.setFormatter(formatter)
    root.addHandler(console)
    handlers = [console]

    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(formatter)
        root.addHandler(handler)
        handlers.append(handler)
    return handlers


def build_parser():
    parser = argparse.ArgumentParser(description="Run NVT Monte-Carlo ensembles of a two-component plasma")
    parser.add_argument('--config', default=CONFIG_FILE, help=f'YAML run file (default: {CONFIG_FILE})')
    parser.add_argument('--output-dir', default='.', help='Directory for the <T>K_energy.txt checkpoints (default: .)')
    parser.add_argument('--refresh', type=float, default=REFRESH_DELAY, help=f'Seconds between status polls (default: {REFRESH_DELAY:g})')
    parser.add_argument('--save-interval', type=int, default=SAVE_ENERGIES_INT, help=f'Polls between energy checkpoints (default: {SAVE_ENERGIES_INT})')
    parser.add_argument('--workers', type=int, default=None, help='Worker threads (default: half the CPUs)')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Console log level (default: INFO)')
    parser.add_argument('--log-file', default=None, help='Also log to this file (DEBUG level)')
    return parser


def main(argv=None):
    """Main entry point; returns the process exit status."""
    args = build_parser().parse_args(argv)
    handlers = setup_logging(args.log_level, args.log_file)
    try:
        return run(args)
    finally:
        root = logging.getLogger()
        for handler in handlers:
            root.removeHandler(handler)
            handler.close()


def run(args):
    """Load the run file, then start and supervise the controller."""
    logger.info("Reading config...")
    logger.info("Running %s with %d CPUs", platform.system(), os.cpu_count() or 1)
    try:
        configs = load_configs(args.config)
    except NoRunsError as exc:
        logger.error("%s", exc)
        return EXIT_NO_RUNS
    except ConfigError as exc:
        logger.error("%s, i'm quit.", exc)
        return EXIT_BAD_CONFIG

    try:
        controller = EnsembleController(
            configs,
            output_dir=args.output_dir,
            refresh_delay=args.refresh,
            save_interval=args.save_interval,
            workers=args.workers,
            config_path=args.config,
        )
    except ValueError as exc:
        logger.error("Can't set up the ensembles: %s, i'm quit.", exc)
        return EXIT_BAD_CONFIG

    try:
        controller.save_continue_options()
    except OSError as exc:
        logger.error("Can't write continuation options: %s", exc)
    logger.info("Reading config done.")

    previous = {sig: signal.signal(sig, lambda signum, frame: controller.stop())
                for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        controller.start()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    logger.info("Done: %s", controller.summary())
    if controller.failures:
        return EXIT_FAILED
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
