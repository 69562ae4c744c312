"""Command-line entry point: scaffold and validate discovery configs."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from call_discovery.config import CONFIG_FILENAME, CONFIG_TEMPLATE, load_config, validate_config

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="call-discovery", description="Dialogue branch discovery")
	parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
	sub = parser.add_subparsers(dest="command")

	init = sub.add_parser("init", help="Write a template config file")
	init.add_argument("path", nargs="?", default=".", help="Directory to write the config into")
	init.add_argument("--force", action="store_true", help="Overwrite an existing config")

	check = sub.add_parser("check", help="Load and validate a config file")
	check.add_argument("--config", default=CONFIG_FILENAME, help="Path to the config file")
	return parser


def cmd_init(args: argparse.Namespace) -> int:
	target = Path(args.path) / CONFIG_FILENAME
	if target.exists() and not args.force:
		print(f"{target} already exists (use --force to overwrite)", file=sys.stderr)
		return 1
	target.parent.mkdir(parents=True, exist_ok=True)
	target.write_text(CONFIG_TEMPLATE)
	print(f"Wrote {target}")
	return 0


def cmd_check(args: argparse.Namespace) -> int:
	if "\x00" in args.config:
		print("Invalid config path", file=sys.stderr)
		return 1
	try:
		cfg = load_config(args.config)
	except FileNotFoundError as exc:
		print(str(exc), file=sys.stderr)
		return 1
	except ValueError as exc:
		print(f"Could not parse {args.config}: {exc}", file=sys.stderr)
		return 1

	issues = validate_config(cfg)
	for issue in issues:
		print(f"  - {issue}", file=sys.stderr)
	if issues:
		return 1
	print(
		f"OK: target {cfg.target.address}, max depth {cfg.exploration.max_depth}, "
		f"{cfg.scheduler.max_concurrent_calls} concurrent calls"
	)
	return 0


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	if args.command == "init":
		return cmd_init(args)
	if args.command == "check":
		return cmd_check(args)
	parser.print_help()
	return 0


if __name__ == "__main__":
	sys.exit(main())
