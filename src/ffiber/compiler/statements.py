"""
Abstract Statements.

The marshaller compiles a descriptor into a flat list of these records before
anything is written, so a descriptor that fails validation leaves the engine
untouched. Each record replays itself into an `EmissionEngine`.

`Reclaim` and `Release` are kept distinct from plain bindings and lines so the
ownership hand-offs in a plan can be inspected directly.
"""

import abc
from dataclasses import dataclass, field
from typing import List, Optional

from ffiber.compiler.contexts import FunctionContext, MatchContext
from ffiber.compiler.engine import EmissionEngine


class Statement(abc.ABC):
  """Base class for all plan statements."""

  @abc.abstractmethod
  def emit(self, engine: EmissionEngine) -> None:
    """Writes the statement into the engine."""
    pass


@dataclass
class OpenFunction(Statement):
  context: FunctionContext

  def emit(self, engine: EmissionEngine) -> None:
    engine.push_context(self.context)


@dataclass
class OpenMatch(Statement):
  scrutinee: str
  arms: List[str] = field(default_factory=list)
  binding: Optional[str] = None

  def emit(self, engine: EmissionEngine) -> None:
    engine.push_context(MatchContext(self.scrutinee, list(self.arms), self.binding))


@dataclass
class CloseScope(Statement):
  def emit(self, engine: EmissionEngine) -> None:
    engine.pop_context()


@dataclass
class Arm(Statement):
  """Single-expression match arm."""

  body: str

  def emit(self, engine: EmissionEngine) -> None:
    engine.add_arm(self.body)


@dataclass
class ArmBlock(Statement):
  """Match arm whose body is a block of statements."""

  body: List[Statement] = field(default_factory=list)

  def emit(self, engine: EmissionEngine) -> None:
    engine.begin_arm()
    for stmt in self.body:
      stmt.emit(engine)
    engine.end_arm()


@dataclass
class Let(Statement):
  """Binding declaration."""

  name: str
  value: str
  mutable: bool = False
  type_name: Optional[str] = None
  unchecked: bool = False

  def emit(self, engine: EmissionEngine) -> None:
    engine.add_def_with_let(self.name, self.value, self.mutable, self.type_name, self.unchecked)


@dataclass
class StoreOut(Statement):
  """Assignment through an out-pointer."""

  pointer: str
  value: str

  def emit(self, engine: EmissionEngine) -> None:
    engine.add_out_assignment(self.pointer, self.value)


@dataclass
class Line(Statement):
  text: str

  def emit(self, engine: EmissionEngine) -> None:
    engine.add_line(self.text)


@dataclass
class Call(Statement):
  """Native invocation, optionally bound."""

  expression: str
  binding: Optional[str] = None

  def emit(self, engine: EmissionEngine) -> None:
    engine.add_func_call(self.expression, self.binding)


@dataclass
class Reclaim(Statement):
  """
  Turns a raw pointer back into an owning ``Box`` of `native`.

  Attributes:
      name (str): Parameter being reclaimed; the binding shadows it.
      native (str): Native type behind the pointer.
      mutable (bool): Declare the binding ``mut``.
      consume (bool): Move the value out of the box. The value is then owned
          by the wrapper and consumed by the call; no release follows.
  """

  name: str
  native: str
  mutable: bool = False
  consume: bool = False

  def emit(self, engine: EmissionEngine) -> None:
    deref = "*" if self.consume else ""
    engine.add_def_with_let(
      self.name,
      f"{deref}Box::from_raw({self.name} as *mut {self.native})",
      mutable=self.mutable,
      unchecked=True,
    )


@dataclass
class Release(Statement):
  """Hands a reclaimed box back to the caller as a raw pointer."""

  name: str

  def emit(self, engine: EmissionEngine) -> None:
    engine.add_line(f"let _ = Box::into_raw({self.name});")


def replay(statements: List[Statement], engine: EmissionEngine) -> None:
  """Emits every statement of a plan in order."""
  for stmt in statements:
    stmt.emit(engine)
