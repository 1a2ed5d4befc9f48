#!/usr/bin/env python3
"""
Dissonance Command Line Interface

Usage:
    dissonance evaluate <input.json> [--summary]
    dissonance l0 <input.json>
    dissonance fp-window <rule_id> (--count N | --since ISO)
    dissonance keygen

Exit codes: 0 allow/warn (or all invariants passed), 1 block (or an
invariant failed), 2 error.
"""

import argparse
import json
import logging
import sys

from nacl.signing import SigningKey

from .config import DissonanceConfig
from .engine import Engine
from .errors import DissonanceError
from .l0 import L0ValidationInput, all_passed
from .logging_config import configure_logging
from .rules import OracleInput
from .security import validate_timestamp

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BLOCK = 1
EXIT_ERROR = 2


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r') as f:
        return json.load(f)


def print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def cmd_evaluate(args, engine: Engine) -> int:
    """Evaluate one request and print the decision."""
    data = OracleInput.from_dict(load_json(args.input))
    output = engine.oracle.evaluate(data)
    if args.summary:
        print(output.summary)
    else:
        print_json(output.to_dict())
    return EXIT_BLOCK if output.decision.blocked() else EXIT_OK


def cmd_l0(args, engine: Engine) -> int:
    """Run the L0 invariants over an input file."""
    data = L0ValidationInput.from_dict(load_json(args.input))
    results = engine.validator.validate_all(data, verify_binding=engine.trust.verify_binding)
    passed = all_passed(results)
    print_json({"passed": passed, "results": [r.to_dict() for r in results]})
    return EXIT_OK if passed else EXIT_BLOCK


def cmd_fp_window(args, engine: Engine) -> int:
    """Print false-positive statistics for a rule."""
    if args.count is not None:
        window = engine.calibration.get_window_by_count(args.rule_id, args.count)
    else:
        since = validate_timestamp(args.since, "since")
        window = engine.calibration.get_window_by_since(args.rule_id, since)
    print_json(window.to_dict())
    return EXIT_OK


def cmd_keygen(args, engine=None) -> int:
    """Generate an Ed25519 seed for DISSONANCE_SIGNING_KEY."""
    key = SigningKey.generate()
    print_json({
        "signing_key": bytes(key).hex(),
        "verify_key": bytes(key.verify_key).hex(),
    })
    return EXIT_OK


COMMANDS = {
    "evaluate": cmd_evaluate,
    "l0": cmd_l0,
    "fp-window": cmd_fp_window,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dissonance",
        description="Dissonance governance decision engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dissonance evaluate request.json --summary
  dissonance l0 invariants.json
  dissonance fp-window MD-002 --count 100
  dissonance keygen
        """
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    eval_parser = subparsers.add_parser("evaluate", help="Evaluate a request")
    eval_parser.add_argument("input", help="Oracle input JSON file")
    eval_parser.add_argument("-s", "--summary", action="store_true", help="Print the text summary instead of JSON")

    l0_parser = subparsers.add_parser("l0", help="Validate L0 invariants")
    l0_parser.add_argument("input", help="L0 input JSON file")

    window_parser = subparsers.add_parser("fp-window", help="False-positive window statistics")
    window_parser.add_argument("rule_id", help="Rule identifier")
    group = window_parser.add_mutually_exclusive_group(required=True)
    group.add_argument("-n", "--count", type=int, help="Most recent N events")
    group.add_argument("--since", help="ISO timestamp lower bound")

    subparsers.add_parser("keygen", help="Generate a signing key")
    return parser


def main(argv=None, engine: Engine = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_ERROR
    if args.command == "keygen":
        return cmd_keygen(args)

    try:
        if engine is None:
            config = DissonanceConfig.from_env()
            configure_logging(config.log_level, json_format=config.log_json)
            engine = Engine.from_config(config)
        return COMMANDS[args.command](args, engine)
    except (DissonanceError, ValueError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
