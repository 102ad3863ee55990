"""
Pytest Configuration and Fixtures.

Includes:
- Syspath patching for local imports.
- Console isolation so tests that capture log output do not leak handlers.
- Shared boundary types used across the compiler tests.
"""

import sys
import pytest
from pathlib import Path

# Add src to path so we can import 'ffiber' without installing it
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from rich.console import Console

from ffiber.types import Primitive, new_struct
from ffiber.utils.console import reset_console, set_console


@pytest.fixture(autouse=True)
def isolate_console():
  """Restores the standard output console after every test."""
  yield
  reset_console()


@pytest.fixture
def recorded_console():
  """A recording console wired into the ffiber logger."""
  console = Console(record=True, width=200, force_terminal=False)
  set_console(console)
  return console


@pytest.fixture
def conn():
  return new_struct("Conn")


@pytest.fixture
def usize():
  return Primitive("usize")
