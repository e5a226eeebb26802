from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from cds_layer.archive import create_jar
from cds_layer.config import load_configuration
from cds_layer.errors import ContributionError, cause_chain
from cds_layer.layer import Layer
from cds_layer.performance import LAYER_NAME, SpringPerformance
from cds_layer.runtime import utc_now_iso

logger = logging.getLogger(__name__)

CommandHandler = Callable[[argparse.Namespace], int]

COMMANDS = {
    "contribute": "Run the CDS training run and populate the performance layer",
    "create-jar": "Rebuild a directory into a deterministic, uncompressed jar",
    "list": "List available commands",
}


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _add_json_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the contribution summary JSON to stdout.",
    )


def _add_optional_bool(parser: argparse.ArgumentParser, flag: str, dest: str, help_text: str) -> None:
    parser.add_argument(
        f"--{flag}",
        dest=dest,
        action=argparse.BooleanOptionalAction,
        default=None,
        help=help_text,
    )


def _report_failure(command: str, exc: BaseException) -> int:
    chain = cause_chain(exc)
    print(f"[cds-layer] {command} failed: {chain[0]}", file=sys.stderr)
    for cause in chain[1:]:
        print(f"caused by: {cause}", file=sys.stderr)
    return 1


def _emit_summary(summary: dict[str, Any], emit_json: bool) -> None:
    if emit_json:
        print(json.dumps(summary, indent=2, sort_keys=True))


def run_contribute(args: argparse.Namespace) -> int:
    started_at = utc_now_iso()
    overrides = {
        "aot_enabled": args.aot_enabled,
        "training_run": args.training_run,
        "classpath": args.classpath,
        "rezip": args.rezip,
    }
    try:
        config = load_configuration(Path(args.app_path), overrides=overrides)
    except (ValueError, ValidationError) as exc:
        return _report_failure("contribute", exc)

    performance = SpringPerformance(config)
    layer = Layer.open(Path(args.layers_dir), args.layer_name)
    try:
        layer = performance.contribute(layer)
    except ContributionError as exc:
        _emit_summary(
            {
                "ended_at": utc_now_iso(),
                "error": cause_chain(exc),
                "failed_step": exc.step,
                "layer": str(layer.path),
                "started_at": started_at,
                "status": "fail",
            },
            args.json,
        )
        return _report_failure("contribute", exc)

    _emit_summary(
        {
            "ended_at": utc_now_iso(),
            "launch_environment": layer.launch_environment.defaults(),
            "layer": str(layer.path),
            "metadata": layer.metadata,
            "outcome": performance.outcome.value if performance.outcome else None,
            "started_at": started_at,
            "status": "pass",
        },
        args.json,
    )
    return 0


def run_create_jar(args: argparse.Namespace) -> int:
    try:
        target = create_jar(Path(args.source), Path(args.target))
    except ContributionError as exc:
        return _report_failure("create-jar", exc)
    logger.info("wrote %s", target)
    return 0


def run_list(args: argparse.Namespace) -> int:
    if args.json:
        print(json.dumps(COMMANDS, indent=2, sort_keys=True))
    else:
        for name, description in COMMANDS.items():
            print(f"{name}: {description}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cds-layer",
        description="Spring Boot CDS training-run layer",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help=COMMANDS["list"])
    _add_json_arg(list_parser)

    contribute = subparsers.add_parser("contribute", help=COMMANDS["contribute"])
    contribute.add_argument("--app-path", required=True, help="Exploded application directory")
    contribute.add_argument("--layers-dir", required=True, help="Directory holding build/launch layers")
    contribute.add_argument(
        "--layer-name",
        default=LAYER_NAME,
        help=f"Layer directory name (default: {LAYER_NAME})",
    )
    contribute.add_argument(
        "--classpath",
        default=None,
        help="Classpath for the training JVM (default: $BP_CDS_CLASSPATH)",
    )
    _add_optional_bool(contribute, "aot", "aot_enabled", "Enable Spring AOT (default: $BP_SPRING_AOT_ENABLED)")
    _add_optional_bool(
        contribute, "training-run", "training_run", "Perform the CDS training run (default: $BP_JVM_CDS_ENABLED)"
    )
    _add_optional_bool(contribute, "rezip", "rezip", "Rebuild the application into runner.jar (default: $BP_CDS_REZIP)")
    _add_json_arg(contribute)

    create = subparsers.add_parser("create-jar", help=COMMANDS["create-jar"])
    create.add_argument("--source", required=True, help="Directory to package")
    create.add_argument("--target", required=True, help="Jar file to write")

    return parser


def _build_handlers() -> dict[str, CommandHandler]:
    return {
        "contribute": run_contribute,
        "create-jar": run_create_jar,
        "list": run_list,
    }


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    handler = _build_handlers().get(args.command)
    if handler is None:
        parser.error(f"No handler wired for command '{args.command}'")
    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
