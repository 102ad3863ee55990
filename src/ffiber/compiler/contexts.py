"""
Emission Scopes.

Records pushed on the `EmissionEngine` scope stack. Each record knows how to
render the header that opens it and the trailer that closes it.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Union

from ffiber.compiler.descriptor import FunctionArg

if TYPE_CHECKING:
  from ffiber.compiler.engine import EmissionEngine

# Return type of wrappers using the fallible protocol (0 = success, 1 = failure).
SENTINEL_TYPE = "u32"
SUCCESS_SENTINEL = "0"
FAILURE_SENTINEL = "1"


@dataclass
class FunctionContext:
  """
  A function body.

  Attributes:
      name (str): Function name.
      is_extern (bool): Export with the C ABI and an unmangled symbol.
      args (List[FunctionArg]): Materialized parameter list.
      ret_type (Optional[str]): Native return type, ignored when the fallible
          epilogue is active.
      needs_fallible_epilogue (bool): Return the success sentinel at the end.
  """

  name: str
  is_extern: bool = False
  args: List[FunctionArg] = field(default_factory=list)
  ret_type: Optional[str] = None
  needs_fallible_epilogue: bool = False

  @property
  def signature_return(self) -> Optional[str]:
    if self.needs_fallible_epilogue:
      return SENTINEL_TYPE
    return self.ret_type

  def header(self) -> List[str]:
    params = ", ".join(arg.render() for arg in self.args)
    ret = self.signature_return
    suffix = f" -> {ret}" if ret else ""
    if self.is_extern:
      return ["#[no_mangle]", f'pub extern "C" fn {self.name}({params}){suffix} {{']
    return [f"fn {self.name}({params}){suffix} {{"]

  def close(self, engine: "EmissionEngine") -> None:
    if self.needs_fallible_epilogue:
      engine.add_line(SUCCESS_SENTINEL)

  @property
  def trailer(self) -> str:
    return "}"


@dataclass
class MatchContext:
  """
  A match expression.

  Arms are declared up front and emitted in order while the scope is active,
  which lets the engine verify on close that none was skipped.

  Attributes:
      scrutinee (str): Expression being matched.
      arms (List[str]): Ordered arm patterns.
      binding (Optional[str]): Name bound to the value of the match, if any.
  """

  scrutinee: str
  arms: List[str] = field(default_factory=list)
  binding: Optional[str] = None
  emitted: int = 0
  in_block: bool = False

  def header(self) -> List[str]:
    if self.binding:
      return [f"let {self.binding} = match {self.scrutinee} {{"]
    return [f"match {self.scrutinee} {{"]

  def next_pattern(self) -> str:
    if self.in_block:
      raise ValueError(f"Arm '{self.arms[self.emitted - 1]}' is still open")
    if self.emitted >= len(self.arms):
      raise ValueError(f"All {len(self.arms)} arms of 'match {self.scrutinee}' already emitted")
    pattern = self.arms[self.emitted]
    self.emitted += 1
    return pattern

  def close(self, engine: "EmissionEngine") -> None:
    if self.in_block:
      raise ValueError(f"Cannot close 'match {self.scrutinee}' with an open arm")
    if self.emitted != len(self.arms):
      missing = self.arms[self.emitted :]
      raise ValueError(f"Non-exhaustive 'match {self.scrutinee}': missing arms {missing}")

  @property
  def trailer(self) -> str:
    return "};" if self.binding else "}"


Context = Union[FunctionContext, MatchContext]
