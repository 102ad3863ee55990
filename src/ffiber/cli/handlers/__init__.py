from .generate import handle_generate, handle_inspect

__all__ = [
  "handle_generate",
  "handle_inspect",
]
