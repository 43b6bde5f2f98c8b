from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

import yaml

from ssllaunch import __version__
from ssllaunch.config.loader import ConfigLoadError, load_and_validate_config, load_launcher_config
from ssllaunch.config.schemas import LauncherConfig, LoggingConfig
from ssllaunch.context import JobContext, build_job_context
from ssllaunch.errors import LaunchError
from ssllaunch.job import JobSpec, run_job
from ssllaunch.tracking import MLflowTracker, NullTracker, Tracker
from ssllaunch.utils.logging import configure_logging
from ssllaunch.utils.summary import format_job_summary

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

COMMANDS = ("launch", "validate", "print-config")


def _configure_logger(
    config_logging: LoggingConfig,
    *,
    verbose: int,
    log_dir: Path | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    level = LOG_LEVELS.get(config_logging.level, logging.INFO)
    if verbose > 0:
        level = logging.DEBUG

    file_name = config_logging.file_name
    if log_dir is not None:
        file_name = str(log_dir / file_name)

    return configure_logging(
        level=level,
        json_output=config_logging.json_output,
        log_to_file=config_logging.log_to_file and log_dir is not None,
        file_name=file_name,
        stream=stream,
    )


def _emit_config_error(error: ConfigLoadError, *, json_output: bool) -> None:
    if json_output:
        payload = {
            "status": "error",
            "kind": "Config",
            "message": error.message,
            "details": error.details,
            "errors": error.errors,
        }
        print(json.dumps(payload, indent=2, default=str), file=sys.stderr)
        return

    print(f"Config error: {error.message}", file=sys.stderr)
    if error.details:
        print(error.details, file=sys.stderr)


def _emit_launch_error(error: LaunchError, *, json_output: bool) -> None:
    if json_output:
        payload = {
            "status": "error",
            "kind": error.kind,
            "error": type(error).__name__,
            "message": str(error),
        }
        print(json.dumps(payload, indent=2), file=sys.stderr)
        return
    print(f"{error.kind} error: {error}", file=sys.stderr)


def _create_tracker(config: LauncherConfig, logger: logging.Logger) -> Tracker:
    mlflow_cfg = config.mlflow
    if not mlflow_cfg.enabled:
        return NullTracker()

    try:
        return MLflowTracker(
            tracking_uri=mlflow_cfg.tracking_uri,
            experiment=mlflow_cfg.experiment,
            run_name=mlflow_cfg.run_name,
        )
    except RuntimeError as exc:
        logger.warning("MLflow unavailable; falling back to NullTracker: %s", exc)
        return NullTracker()


def build_parser() -> argparse.ArgumentParser:
    """Construct the argument parser for the ssllaunch CLI."""
    parser = argparse.ArgumentParser(
        prog="ssllaunch",
        description=(
            "Stage a dataset and run MoCo-style pre-training followed by linear "
            "classification on a Slurm allocation."
        ),
        epilog=(
            "Without a command, arguments are read as `launch`: "
            "ssllaunch DATASET [TRAIN_ARGS ...]"
        ),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show the ssllaunch version and exit.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable).",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    launch_parser = subparsers.add_parser(
        "launch",
        parents=[common],
        help="Stage data and run both training phases.",
    )
    launch_parser.add_argument(
        "--config",
        default=None,
        help="YAML configuration file (falls back to $SSLLAUNCH_CONFIG, then defaults).",
    )
    launch_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Resolve and print the launch plan without copying or starting anything.",
    )
    launch_parser.add_argument(
        "dataset",
        help="imagenet, imagenette, a directory, or a .tar/.tgz/.tar.gz file.",
    )
    launch_parser.add_argument(
        "train_args",
        nargs=argparse.REMAINDER,
        help="Arguments forwarded unchanged to the training program in both phases.",
    )

    validate_parser = subparsers.add_parser(
        "validate", parents=[common], help="Validate a config file."
    )
    validate_parser.add_argument("--config", required=True, help="Path to the YAML file.")

    print_parser = subparsers.add_parser(
        "print-config",
        parents=[common],
        help="Print the resolved config with defaults.",
    )
    print_parser.add_argument("--config", default=None, help="Path to the YAML file.")

    return parser


def _handle_validate(args: argparse.Namespace) -> int:
    try:
        load_and_validate_config(args.config)
    except ConfigLoadError as exc:
        _emit_config_error(exc, json_output=args.json)
        return 2

    if args.json:
        print(json.dumps({"status": "ok"}, indent=2))
    else:
        print("Config validation succeeded.")
    return 0


def _handle_print_config(args: argparse.Namespace) -> int:
    try:
        config = load_launcher_config(args.config)
    except ConfigLoadError as exc:
        _emit_config_error(exc, json_output=args.json)
        return 2

    payload = config.model_dump(mode="json")
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        print(yaml.safe_dump(payload, sort_keys=False), end="")
    return 0


def _load_context(args: argparse.Namespace) -> tuple[LauncherConfig, JobContext] | int:
    try:
        config = load_launcher_config(args.config)
    except ConfigLoadError as exc:
        _emit_config_error(exc, json_output=args.json)
        return 2
    try:
        ctx = build_job_context(config)
    except LaunchError as exc:
        _emit_launch_error(exc, json_output=args.json)
        return exc.exit_code
    return config, ctx


def _handle_launch(args: argparse.Namespace) -> int:
    loaded = _load_context(args)
    if isinstance(loaded, int):
        return loaded
    config, ctx = loaded

    logger = _configure_logger(
        config.logging,
        verbose=args.verbose,
        log_dir=None if args.dry_run else ctx.log_dir,
        stream=sys.stderr if args.json else None,
    )
    spec = JobSpec(dataset=args.dataset, train_args=tuple(args.train_args))
    logger.info(
        "job %s (%s): dataset=%s nodes=%d restart_count=%d",
        ctx.job_name,
        ctx.job_id,
        spec.dataset,
        ctx.num_nodes,
        ctx.restart_count,
    )

    tracker = _create_tracker(config, logger)
    status = "FAILED"
    tracker.start_run(
        run_name=config.mlflow.run_name or f"{ctx.job_name}-{ctx.job_id}",
        tags={"job_id": ctx.job_id, "restart_count": str(ctx.restart_count)},
    )
    try:
        try:
            result = run_job(spec, ctx, config, tracker=tracker, dry_run=args.dry_run)
        except LaunchError as exc:
            logger.error("job failed: %s", exc)
            _emit_launch_error(exc, json_output=args.json)
            return exc.exit_code

        summary = format_job_summary(ctx=ctx, spec=spec, result=result, json_output=args.json)
        if args.json:
            print(json.dumps(summary, indent=2))
        else:
            print(summary)
        status = "FINISHED"
    finally:
        tracker.end_run(status=status)

    return 0


def _default_to_launch(argv: Sequence[str]) -> list[str]:
    """Read ``ssllaunch <dataset> ...`` as ``ssllaunch launch <dataset> ...``."""
    args = list(argv)
    for index, arg in enumerate(args):
        if arg in ("-h", "--help", "--version") or arg in COMMANDS:
            return args
        if arg == "--verbose" or (arg.startswith("-v") and set(arg[1:]) == {"v"}):
            continue
        return [*args[:index], "launch", *args[index:]]
    return args


def main(argv: Sequence[str] | None = None) -> int:
    """Entrypoint for ``python -m ssllaunch``."""
    parser = build_parser()
    args = parser.parse_args(_default_to_launch(sys.argv[1:] if argv is None else argv))

    if args.command == "validate":
        return _handle_validate(args)
    if args.command == "print-config":
        return _handle_print_config(args)
    if args.command == "launch":
        return _handle_launch(args)

    print(f"Unknown command: {args.command}", file=sys.stderr)
    return 1
