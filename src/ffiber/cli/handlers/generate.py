"""
Generate and Inspect Command Handlers.

Both commands read a descriptor manifest, register its contents on a
`CDylibCompiler` and then either write the crate (`generate`) or print the
resulting C surface as a table (`inspect`).
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional

from rich.markup import escape
from rich.table import Table

from ffiber.config import GeneratorConfig
from ffiber.manifest import build_compiler, load_manifest
from ffiber.package import CDylibCompiler
from ffiber.utils.console import console, log_error, log_info, logger


def _prepare(manifest_path: Path, output: Optional[Path], config: GeneratorConfig) -> Optional[CDylibCompiler]:
  """Loads the manifest and registers it, logging failures. Returns None on error."""
  if not manifest_path.is_file():
    log_error(f"Manifest not found: {escape(str(manifest_path))}")
    return None
  try:
    manifest = load_manifest(manifest_path)
    return build_compiler(manifest, manifest_path.parent, output=output, config=config)
  except (ValueError, TypeError) as e:
    log_error(escape(str(e)))
    return None


def handle_generate(manifest_path: Path, output: Optional[Path], no_format: bool, verbose: bool = False) -> int:
  """
  Handles the 'generate' command execution.

  Args:
      manifest_path: Path to the descriptor manifest.
      output: Overrides the manifest's output directory.
      no_format: Skip the formatter regardless of configuration.
      verbose: Log each registered wrapper.

  Returns:
      int: Exit code (0 for success, 1 for failure).
  """
  if verbose:
    logger.setLevel(logging.DEBUG)

  try:
    config = GeneratorConfig.load(
      search_path=manifest_path.parent,
      run_formatter=False if no_format else None,
    )
  except ValueError as e:
    log_error(f"Invalid configuration: {escape(str(e))}")
    return 1
  log_info(f"Reading [path]{escape(str(manifest_path))}[/path]")

  compiler = _prepare(manifest_path, output, config)
  if compiler is None:
    return 1

  try:
    compiler.flush()
  except subprocess.CalledProcessError as e:
    detail = (e.stderr or "").strip()
    log_error(f"Formatter failed with exit code {e.returncode}: {escape(detail)}")
    return 1
  except (OSError, ValueError) as e:
    log_error(f"Could not write crate: {escape(str(e))}")
    return 1

  return 0


def handle_inspect(manifest_path: Path) -> int:
  """
  Handles the 'inspect' command execution.

  Prints every exported symbol with its C parameter list and return type,
  without writing anything.

  Args:
      manifest_path: Path to the descriptor manifest.

  Returns:
      int: Exit code (0 for success, 1 for failure).
  """
  compiler = _prepare(manifest_path, None, GeneratorConfig(run_formatter=False))
  if compiler is None:
    return 1

  table = Table(title=f"Exported symbols: {escape(compiler.package_name_c)}")
  table.add_column("Symbol", style="bold cyan")
  table.add_column("Parameters")
  table.add_column("Returns", style="magenta")

  for ctx in compiler.signatures:
    params = ", ".join(arg.render() for arg in ctx.args)
    table.add_row(ctx.name, escape(params) or "-", escape(ctx.signature_return or "()"))

  console.print(table)
  log_info(f"{len(compiler.signatures)} exported functions")
  return 0
