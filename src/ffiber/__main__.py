"""
Entry point for module execution (``python -m ffiber``).

This module delegates execution to the CLI handler in ``ffiber.cli.__main__``.
"""

import sys
from ffiber.cli.__main__ import main

if __name__ == "__main__":
  sys.exit(main())
