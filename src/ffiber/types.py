"""
Boundary Type Model.

Describes a single argument or return type in two forms:

1.  **Native**: the fully qualified Rust type used inside the wrapper body
    (e.g. ``ReceivedPkt<Mlx5Connection>``).
2.  **ABI**: the flattened scalar/pointer encoding that appears in the exported
    signature (e.g. ``*mut ::std::os::raw::c_void``).

The variants form a closed family. Every consumer dispatches over all of them
and raises on anything else, so an unhandled combination can never degrade
into silently wrong code.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence as SequenceT, Tuple

# Opaque pointer-sized handle used for every struct and reference.
OPAQUE_POINTER = "*mut ::std::os::raw::c_void"

# Companion length parameters and enum ordinals are pointer-sized unsigned ints.
LENGTH_TYPE = "usize"
ORDINAL_TYPE = "usize"

# Placeholder for the receiver type inside generic argument lists.
SELF_PLACEHOLDER = "Self"

PRIMITIVES = frozenset(
  {
    "bool",
    "char",
    "f32",
    "f64",
    "i8",
    "i16",
    "i32",
    "i64",
    "i128",
    "isize",
    "u8",
    "u16",
    "u32",
    "u64",
    "u128",
    "usize",
  }
)


class BoundaryType:
  """Base class for all boundary type variants."""


@dataclass(frozen=True)
class Primitive(BoundaryType):
  """A scalar that crosses the boundary unchanged (e.g. ``usize``)."""

  name: str


@dataclass(frozen=True)
class Struct(BoundaryType):
  """
  A native struct, optionally generic.

  Attributes:
      name (str): Path of the struct (e.g. ``Mlx5Connection``).
      params (Tuple[BoundaryType, ...]): Concrete generic arguments.
  """

  name: str
  params: Tuple[BoundaryType, ...] = ()


@dataclass(frozen=True)
class SharedRef(BoundaryType):
  """An immutable borrow (``&T``)."""

  inner: BoundaryType


@dataclass(frozen=True)
class MutRef(BoundaryType):
  """A mutable borrow (``&mut T``)."""

  inner: BoundaryType


@dataclass(frozen=True)
class Sequence(BoundaryType):
  """A contiguous run of elements; crosses as pointer plus length."""

  elem: BoundaryType


@dataclass(frozen=True)
class Enum(BoundaryType):
  """
  A fieldless enum. Crosses as the zero-based ordinal of its variant.

  Attributes:
      name (str): Enum path (e.g. ``Mode``).
      variants (Tuple[str, ...]): Variant names in declaration order.
  """

  name: str
  variants: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AbiRepr:
  """
  ABI encoding of a boundary type.

  Attributes:
      scalar (str): The parameter type as it appears in the C signature.
      has_length (bool): True if a companion ``usize`` length travels with it.
  """

  scalar: str
  has_length: bool = False


def new_struct(name: str, *params: BoundaryType) -> Struct:
  """Shorthand for building a (possibly generic) struct type."""
  return Struct(name, tuple(params))


def to_abi_representation(ty: BoundaryType, is_return: bool = False) -> AbiRepr:
  """
  Flattens a boundary type to its C ABI encoding.

  Args:
      ty: The type to encode.
      is_return: Encode for the return position. Sequence returns become an
          array of individually boxed element handles.

  Returns:
      AbiRepr: The scalar type and whether a length companion is required.

  Raises:
      ValueError: For sequences of sequences and for enum returns.
      TypeError: If ``ty`` is not a known variant.
  """
  if isinstance(ty, Primitive):
    return AbiRepr(ty.name)
  if isinstance(ty, (Struct, SharedRef, MutRef)):
    return AbiRepr(OPAQUE_POINTER)
  if isinstance(ty, Sequence):
    if isinstance(ty.elem, Sequence):
      raise ValueError(f"Sequence of sequences is not supported: {to_native_declaration(ty)}")
    if is_return:
      if isinstance(ty.elem, Enum):
        raise ValueError(f"Enum '{ty.elem.name}' cannot be returned across the boundary")
      return AbiRepr(f"*mut {OPAQUE_POINTER}", has_length=True)
    elem = to_abi_representation(ty.elem)
    return AbiRepr(f"*const {elem.scalar}", has_length=True)
  if isinstance(ty, Enum):
    if is_return:
      raise ValueError(f"Enum '{ty.name}' cannot be returned across the boundary")
    return AbiRepr(ORDINAL_TYPE)
  raise TypeError(f"Unknown boundary type: {ty!r}")


def to_native_declaration(ty: BoundaryType) -> str:
  """
  Renders the native type used inside the wrapper body.

  Generic argument lists are rendered recursively, so
  ``Struct("A", (Struct("B", (Primitive("u8"),)),))`` becomes ``A<B<u8>>``.

  Args:
      ty: The type to render.

  Returns:
      str: The native type expression.
  """
  if isinstance(ty, Primitive):
    return ty.name
  if isinstance(ty, Struct):
    if not ty.params:
      return ty.name
    inner = ", ".join(to_native_declaration(p) for p in ty.params)
    return f"{ty.name}<{inner}>"
  if isinstance(ty, SharedRef):
    return f"&{to_native_declaration(ty.inner)}"
  if isinstance(ty, MutRef):
    return f"&mut {to_native_declaration(ty.inner)}"
  if isinstance(ty, Sequence):
    return f"Vec<{to_native_declaration(ty.elem)}>"
  if isinstance(ty, Enum):
    return ty.name
  raise TypeError(f"Unknown boundary type: {ty!r}")


def to_native_path(ty: Struct) -> str:
  """
  Renders a struct in expression position (turbofish form).

  Used to call associated functions, e.g. ``ReceivedPkt::<Conn>::new``.
  """
  if not ty.params:
    return ty.name
  inner = ", ".join(to_native_declaration(p) for p in ty.params)
  return f"{ty.name}::<{inner}>"


def base_name(ty: Struct) -> str:
  """Last path segment of a struct name, used for exported symbol prefixes."""
  return ty.name.split("::")[-1]


def resolve_self(ty: BoundaryType, owner: Struct) -> BoundaryType:
  """
  Replaces every ``Self`` placeholder with the concrete receiver type.

  Args:
      ty: The type that may reference ``Self``.
      owner: The receiver type to substitute.

  Returns:
      BoundaryType: A new type without placeholders.
  """
  if isinstance(ty, Struct):
    if ty.name == SELF_PLACEHOLDER and not ty.params:
      return owner
    return Struct(ty.name, tuple(resolve_self(p, owner) for p in ty.params))
  if isinstance(ty, SharedRef):
    return SharedRef(resolve_self(ty.inner, owner))
  if isinstance(ty, MutRef):
    return MutRef(resolve_self(ty.inner, owner))
  if isinstance(ty, Sequence):
    return Sequence(resolve_self(ty.elem, owner))
  if isinstance(ty, (Primitive, Enum)):
    return ty
  raise TypeError(f"Unknown boundary type: {ty!r}")


def contains_self(ty: BoundaryType) -> bool:
  """True if ``ty`` still contains an unresolved ``Self`` placeholder."""
  if isinstance(ty, Struct):
    return ty.name == SELF_PLACEHOLDER or any(contains_self(p) for p in ty.params)
  if isinstance(ty, (SharedRef, MutRef)):
    return contains_self(ty.inner)
  if isinstance(ty, Sequence):
    return contains_self(ty.elem)
  if isinstance(ty, (Primitive, Enum)):
    return False
  raise TypeError(f"Unknown boundary type: {ty!r}")


# --- Type expression parsing ---

_TOKEN_RE = re.compile(r"\s*(::|[A-Za-z_][A-Za-z0-9_]*|[&<>,\[\]])")


def _tokenize(text: str) -> List[str]:
  tokens = []
  pos = 0
  stripped = text.rstrip()
  while pos < len(stripped):
    match = _TOKEN_RE.match(stripped, pos)
    if not match:
      raise ValueError(f"Unexpected character {stripped[pos]!r} in type '{text}'")
    tokens.append(match.group(1))
    pos = match.end()
  return tokens


class _TypeParser:
  """Recursive descent parser over the tokens of a native type expression."""

  def __init__(self, text: str, enums: Mapping[str, SequenceT[str]]):
    self.text = text
    self.tokens = _tokenize(text)
    self.pos = 0
    self.enums = enums

  def peek(self) -> Optional[str]:
    return self.tokens[self.pos] if self.pos < len(self.tokens) else None

  def expect(self, token: str) -> None:
    if self.peek() != token:
      raise ValueError(f"Expected '{token}' in type '{self.text}', found {self.peek()!r}")
    self.pos += 1

  def parse(self) -> BoundaryType:
    ty = self.parse_type()
    if self.peek() is not None:
      raise ValueError(f"Trailing tokens in type '{self.text}': {self.tokens[self.pos :]}")
    return ty

  def parse_type(self) -> BoundaryType:
    tok = self.peek()
    if tok is None:
      raise ValueError(f"Unexpected end of type '{self.text}'")

    if tok == "&":
      self.pos += 1
      if self.peek() == "mut":
        self.pos += 1
        return MutRef(self.parse_type())
      return SharedRef(self.parse_type())

    if tok == "[":
      self.pos += 1
      elem = self.parse_type()
      self.expect("]")
      return Sequence(elem)

    path = self.parse_path()
    params: List[BoundaryType] = []
    if self.peek() == "<":
      self.pos += 1
      params.append(self.parse_type())
      while self.peek() == ",":
        self.pos += 1
        params.append(self.parse_type())
      self.expect(">")

    if path == "Vec":
      if len(params) != 1:
        raise ValueError(f"Vec takes exactly one type argument in '{self.text}'")
      return Sequence(params[0])
    if path in PRIMITIVES:
      if params:
        raise ValueError(f"Primitive '{path}' cannot take type arguments")
      return Primitive(path)
    if path in self.enums:
      if params:
        raise ValueError(f"Enum '{path}' cannot take type arguments")
      return Enum(path, tuple(self.enums[path]))
    return Struct(path, tuple(params))

  def parse_path(self) -> str:
    segments = [self.parse_ident()]
    while self.peek() == "::":
      self.pos += 1
      segments.append(self.parse_ident())
    return "::".join(segments)

  def parse_ident(self) -> str:
    tok = self.peek()
    if tok is None or not (tok[0].isalpha() or tok[0] == "_"):
      raise ValueError(f"Expected identifier in type '{self.text}', found {tok!r}")
    self.pos += 1
    return tok


def parse_type(text: str, enums: Optional[Mapping[str, SequenceT[str]]] = None) -> BoundaryType:
  """
  Parses a native type expression into a boundary type.

  Supported syntax: primitives, ``&T``, ``&mut T``, ``Vec<T>`` and ``[T]``
  (both Sequence), generic paths ``a::B<C, D<E>>`` (Struct) and names listed
  in ``enums``.

  Args:
      text: The type expression.
      enums: Declared enums, mapping name to ordered variant names.

  Returns:
      BoundaryType: The parsed type.

  Raises:
      ValueError: On malformed input.
  """
  enum_table: Dict[str, SequenceT[str]] = dict(enums or {})
  return _TypeParser(text, enum_table).parse()
