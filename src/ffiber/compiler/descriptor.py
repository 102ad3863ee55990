"""
Function Descriptors and Boundary Parameters.

A `FunctionDescriptor` is the input of the marshaller: one native function or
method to expose. `FunctionArg` values are the materialized C parameters of
the exported wrapper.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from ffiber.enums import SelfMode
from ffiber.types import BoundaryType, LENGTH_TYPE, OPAQUE_POINTER, Struct, base_name

# Name of the receiver parameter. `self` is a keyword in the generated code.
SELF_NAME = "self_"
RETURN_NAME = "return_ptr"
RETURN_LEN_NAME = "return_len"


@dataclass(frozen=True)
class SelfParam:
  """The opaque receiver pointer."""

  def render(self) -> str:
    return f"{SELF_NAME}: {OPAQUE_POINTER}"


@dataclass(frozen=True)
class NamedParam:
  """
  A named C parameter.

  Attributes:
      name (str): Parameter identifier.
      abi_type (str): The ABI scalar type. For out-parameters this is the
          pointee type; the pointer level is added on render.
      is_length_companion (bool): Length of the preceding sequence argument.
      is_return_out (bool): Out-pointer receiving the return value.
      is_return_length_out (bool): Out-pointer receiving a returned sequence length.
  """

  name: str
  abi_type: str
  is_length_companion: bool = False
  is_return_out: bool = False
  is_return_length_out: bool = False

  def render(self) -> str:
    if self.is_return_out or self.is_return_length_out:
      return f"{self.name}: *mut {self.abi_type}"
    return f"{self.name}: {self.abi_type}"


FunctionArg = Union[SelfParam, NamedParam]


def length_param(name: str) -> NamedParam:
  """Companion length parameter for the sequence argument `name`."""
  return NamedParam(f"{name}_len", LENGTH_TYPE, is_length_companion=True)


@dataclass
class FunctionDescriptor:
  """
  One function to expose through the C ABI.

  Attributes:
      func_name (str): Native function or method name.
      owner (Optional[Struct]): Type the function is defined on. None for a
          standalone function.
      self_mode (SelfMode): How the receiver crosses the boundary.
      args (List[Tuple[str, BoundaryType]]): Ordered arguments.
      ret (Optional[BoundaryType]): Return type, if any.
      fallible (bool): The native call returns a Result; use the 0/1 sentinel.
      extern_name (Optional[str]): Override for the exported symbol.
  """

  func_name: str
  owner: Optional[BoundaryType] = None
  self_mode: SelfMode = SelfMode.NONE
  args: List[Tuple[str, BoundaryType]] = field(default_factory=list)
  ret: Optional[BoundaryType] = None
  fallible: bool = False
  extern_name: Optional[str] = None

  @property
  def has_receiver(self) -> bool:
    return self.self_mode != SelfMode.NONE

  @property
  def symbol(self) -> str:
    """
    Exported symbol name.

    Defaults to ``<Owner>_<func>`` for functions on a type and to the plain
    function name for standalone functions.
    """
    if self.extern_name:
      return self.extern_name
    if isinstance(self.owner, Struct):
      return f"{base_name(self.owner)}_{self.func_name}"
    return self.func_name
