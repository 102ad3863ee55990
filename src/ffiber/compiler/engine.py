"""
Scoped Emission Engine.

An append-only statement buffer with an explicit scope stack. Pushing a scope
writes its header and indents everything emitted until the matching pop;
popping writes the trailer and restores the previous indentation.

The engine never reorders or rewrites what it is given. The output is the
concatenation of everything emitted, in order.

Usage:

.. code-block:: python

    engine = EmissionEngine()
    with engine.push_context(FunctionContext("main")):
      engine.add_def_with_let("x", "1")
    print(engine.to_source())
    # fn main() {
    #     let x = 1;
    # }
"""

from pathlib import Path
from typing import List, Optional

from ffiber.compiler.contexts import Context, FunctionContext, MatchContext

INDENT = "    "


class ScopeGuard:
  """
  Handle returned by `EmissionEngine.push_context`.

  Calling `close()` (or leaving a ``with`` block) pops the scope. Guards must
  be closed in reverse order of creation.
  """

  def __init__(self, engine: "EmissionEngine", context: Context):
    self.engine = engine
    self.context = context
    self.closed = False

  def close(self) -> None:
    """Pops the guarded scope from the engine."""
    if self.closed:
      raise ValueError("Scope already closed")
    if self.engine.current_context is not self.context:
      raise ValueError("Scopes must be closed in reverse order of opening")
    self.engine.pop_context()
    self.closed = True

  def __enter__(self) -> "ScopeGuard":
    return self

  def __exit__(self, exc_type, exc_val, exc_tb) -> None:
    # On error the run is aborted anyway; leave the stack for inspection.
    if exc_type is None and not self.closed:
      self.close()


class EmissionEngine:
  """
  Turns an ordered instruction sequence into formatted source text.
  """

  def __init__(self) -> None:
    """Initializes an empty buffer with no open scope."""
    self._lines: List[str] = []
    self._stack: List[Context] = []

  @property
  def lines(self) -> List[str]:
    """A copy of the emitted lines."""
    return list(self._lines)

  @property
  def current_context(self) -> Optional[Context]:
    return self._stack[-1] if self._stack else None

  @property
  def depth(self) -> int:
    """Current indentation level, counting open match arm blocks."""
    level = 0
    for ctx in self._stack:
      level += 1
      if isinstance(ctx, MatchContext) and ctx.in_block:
        level += 1
    return level

  def _write(self, text: str) -> None:
    self._lines.append(f"{INDENT * self.depth}{text}" if text else "")

  # --- Scopes ---

  def push_context(self, context: Context) -> ScopeGuard:
    """
    Opens a scope.

    Args:
        context: A FunctionContext or MatchContext.

    Returns:
        ScopeGuard: Closes the scope when released.
    """
    if isinstance(context, MatchContext) and not self._stack:
      raise ValueError(f"'match {context.scrutinee}' must be nested inside a function")
    for line in context.header():
      self._write(line)
    self._stack.append(context)
    return ScopeGuard(self, context)

  def pop_context(self) -> None:
    """
    Closes the innermost scope.

    Raises:
        ValueError: If no scope is open, or a match scope is left incomplete.
    """
    if not self._stack:
      raise ValueError("No open scope to pop")
    context = self._stack[-1]
    context.close(self)
    self._stack.pop()
    self._write(context.trailer)
    if not self._stack and isinstance(context, FunctionContext):
      self._write("")

  def _current_match(self) -> MatchContext:
    context = self.current_context
    if not isinstance(context, MatchContext):
      raise ValueError("Match arms can only be emitted inside a match scope")
    return context

  def add_arm(self, body: str) -> None:
    """Emits the next declared arm with a single-expression body."""
    pattern = self._current_match().next_pattern()
    self._write(f"{pattern} => {body},")

  def begin_arm(self) -> None:
    """Opens the next declared arm as a block; close it with `end_arm`."""
    context = self._current_match()
    pattern = context.next_pattern()
    self._write(f"{pattern} => {{")
    context.in_block = True

  def end_arm(self) -> None:
    """Closes the arm block opened by `begin_arm`."""
    context = self._current_match()
    if not context.in_block:
      raise ValueError("No open match arm to close")
    context.in_block = False
    self._write("}")

  # --- Statements ---

  def add_line(self, line: str) -> None:
    """Emits a free-form line at the current indentation."""
    self._write(line)

  def add_newline(self) -> None:
    self._lines.append("")

  def add_extern_crate(self, name: str) -> None:
    self._write(f"extern crate {name};")

  def add_dependency(self, path: str) -> None:
    """Emits a ``use`` declaration."""
    self._write(f"use {path};")

  def add_def_with_let(
    self,
    left: str,
    right: str,
    mutable: bool = False,
    type_name: Optional[str] = None,
    unchecked: bool = False,
  ) -> None:
    """
    Emits a binding declaration.

    Args:
        left: Name being bound.
        right: Initializer expression.
        mutable: Declare the binding ``mut``.
        type_name: Optional explicit type annotation.
        unchecked: Wrap the initializer in an ``unsafe`` block.
    """
    mut = "mut " if mutable else ""
    annotation = f": {type_name}" if type_name else ""
    value = f"unsafe {{ {right} }}" if unchecked else right
    self._write(f"let {mut}{left}{annotation} = {value};")

  def add_out_assignment(self, pointer: str, value: str) -> None:
    """Writes `value` through the raw out-pointer `pointer`."""
    self._write(f"unsafe {{ *{pointer} = {value} }};")

  def add_func_call(self, call: str, binding: Optional[str] = None, mutable: bool = False) -> None:
    """Emits a call, optionally binding its result."""
    if binding:
      self.add_def_with_let(binding, call, mutable=mutable)
    else:
      self._write(f"{call};")

  # --- Output ---

  def to_source(self) -> str:
    """
    Returns the emitted text.

    Returns:
        str: Source text ending in exactly one newline (empty if nothing was emitted).
    """
    text = "\n".join(self._lines).rstrip("\n")
    return f"{text}\n" if text else ""

  def flush(self, path: Path) -> None:
    """
    Writes the emitted text to `path`.

    Raises:
        ValueError: If a scope is still open.
    """
    if self._stack:
      open_scopes = [type(ctx).__name__ for ctx in self._stack]
      raise ValueError(f"Cannot flush with open scopes: {open_scopes}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(self.to_source(), encoding="utf-8")
