"""
Main Entry Point for the ffiber CLI.

This module handles argument parsing and dispatches to the command handlers
defined in `ffiber.cli.handlers`.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from ffiber.cli import handlers
from ffiber import __version__


def main(argv: Optional[List[str]] = None) -> int:
  """
  Main CLI entry point.

  Args:
      argv: Optional list of command line arguments (defaults to sys.argv).

  Returns:
      int: Exit code (0 for success, non-zero for failure).
  """
  parser = argparse.ArgumentParser(description="ffiber: C ABI wrapper generator for Rust crates")
  parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

  subparsers = parser.add_subparsers(dest="command", required=True)

  # --- Command: GENERATE ---
  cmd_gen = subparsers.add_parser("generate", help="Generate the cdylib wrapper crate described by a manifest")
  cmd_gen.add_argument("manifest", type=Path, help="Descriptor manifest (TOML)")
  cmd_gen.add_argument("--out", type=Path, default=None, help="Output directory (default: from manifest)")
  cmd_gen.add_argument(
    "--no-format",
    action="store_true",
    help="Skip running the formatter over generated sources (Overrides config)",
  )
  cmd_gen.add_argument("--verbose", action="store_true", help="Log every registered wrapper")

  # --- Command: INSPECT ---
  cmd_insp = subparsers.add_parser("inspect", help="List the exported symbols a manifest would produce")
  cmd_insp.add_argument("manifest", type=Path, help="Descriptor manifest (TOML)")

  args = parser.parse_args(argv)

  if args.command == "generate":
    return handlers.handle_generate(args.manifest, args.out, args.no_format, args.verbose)

  elif args.command == "inspect":
    return handlers.handle_inspect(args.manifest)

  return 0


if __name__ == "__main__":
  sys.exit(main())
