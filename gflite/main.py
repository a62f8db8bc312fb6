"""Command line entry point: ``gflite INPUT OUTPUT``."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from gflite import __version__
from gflite.errors import DocumentError, GFliteError
from gflite.integrations.golem import GolemClient
from gflite.pipeline import ConversionRequest, open_workspace, run_conversion
from gflite.settings import (
    apply_overrides,
    build_golem_config,
    build_retry_policy,
    get_runtime_settings,
    resolve_bid,
    resolve_timeouts,
)
from gflite.timeouts import parse_timeout
from gflite.utils import configure_logging

logger = logging.getLogger(__name__)


def _timeout_argument(value: str) -> str:
    try:
        parse_timeout(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return value


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {parsed}")
    return parsed


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"expected zero or more, got {parsed}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gflite",
        description="Convert a text file to speech using flite compiled to WebAssembly on the Golem network.",
    )
    parser.add_argument("input", type=Path, help="input text file")
    parser.add_argument("output", type=Path, help="output WAV file")
    parser.add_argument("--subtasks", type=_positive_int, help="number of Golem subtasks (default 6)")
    parser.add_argument("--bid", help="bid value for Golem task (default 1.0)")
    parser.add_argument("--budget", help="budget for the task (unlimited by default)")
    parser.add_argument(
        "--task-timeout",
        "--task_timeout",
        dest="task_timeout",
        type=_timeout_argument,
        help="task timeout as HH:MM:SS (default 00:10:00)",
    )
    parser.add_argument(
        "--subtask-timeout",
        "--subtask_timeout",
        dest="subtask_timeout",
        type=_timeout_argument,
        help="subtask timeout as HH:MM:SS (default 00:01:00)",
    )
    parser.add_argument("--max-retries", dest="max_retries", type=_non_negative_int, help="retries per subtask (default 2)")
    parser.add_argument("--datadir", help="Golem data directory")
    parser.add_argument("--address", help="Golem RPC address (default 127.0.0.1)")
    parser.add_argument("--port", type=_positive_int, help="Golem RPC port (default 61000)")
    parser.add_argument("--kernel-js", dest="kernel_js", help="path to the flite.js kernel")
    parser.add_argument("--kernel-wasm", dest="kernel_wasm", help="path to the flite.wasm kernel")
    parser.add_argument("--workspace", type=Path, help="keep the task workspace in this directory")
    parser.add_argument("--mainnet", action="store_true", default=None, help="use Golem mainnet instead of testnet")
    parser.add_argument("-v", "--verbose", action="store_true", help="log progress details")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _validate_paths(args: argparse.Namespace) -> None:
    if not args.input.is_file():
        raise DocumentError(f"Input file '{args.input}' doesn't exist. Did you make a typo anywhere?")
    parent = args.output.expanduser().resolve().parent
    if not parent.is_dir():
        raise GFliteError(f"Output directory '{parent}' doesn't exist.")


def _settings_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides = {
        "subtasks": args.subtasks,
        "bid": args.bid,
        "budget": args.budget,
        "task_timeout": args.task_timeout,
        "subtask_timeout": args.subtask_timeout,
        "max_retries": args.max_retries,
        "datadir": args.datadir,
        "address": args.address,
        "port": args.port,
        "mainnet": args.mainnet,
        "kernel_js": args.kernel_js,
        "kernel_wasm": args.kernel_wasm,
    }
    return apply_overrides(get_runtime_settings(), overrides)


def run(args: argparse.Namespace) -> Path:
    settings = _settings_from_args(args)
    task_timeout, subtask_timeout = resolve_timeouts(settings)
    request = ConversionRequest(
        input_path=args.input,
        output_path=args.output.expanduser().resolve(),
        subtasks=int(settings["subtasks"]),
        bid=resolve_bid(settings),
        task_timeout=task_timeout,
        subtask_timeout=subtask_timeout,
        retry_policy=build_retry_policy(settings),
        poll_interval=float(settings["poll_interval"]),
        fetch_workers=int(settings["fetch_workers"]),
    )
    config = build_golem_config(settings)

    with open_workspace(args.workspace) as workspace:
        with GolemClient(config, workspace) as client:
            result = run_conversion(
                request,
                client,
                on_step=lambda step, message: print(f"[{step}/4] {message}", flush=True),
            )
    return result.output_path


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        _validate_paths(args)
        output = run(args)
    except GFliteError as exc:
        print(f"An error occurred while {exc.describe()}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"An error occurred while reading settings: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("An error occurred while computing task on Golem: interrupted", file=sys.stderr)
        return 130

    print(f"Done! Output written to '{output}'")
    return 0


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    sys.exit(main())
