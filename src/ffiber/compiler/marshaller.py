"""
Ownership-Transfer Marshaller.

Compiles a `FunctionDescriptor` into the statements of one exported wrapper.
For every receiver, argument and return value it decides whether the value
crosses by value, by shared borrow or by mutable borrow, and emits the
matching pointer casts, box conversions and hand-backs.

The compilation runs in five phases:

1.  **Receiver**: rebuild the receiver from its opaque pointer.
2.  **Arguments**: rebuild every argument, in declaration order.
3.  **Invocation**: call the native function.
4.  **Result dispatch** (fallible only): route ``Ok``/``Err`` to the 0/1 sentinel.
5.  **Return**: write the result through the out-pointers, then give every
    borrowed handle back to the caller.

Any combination not handled below raises `ValueError`. There is no fallback:
a wrong ownership decision would be a memory-safety bug in the generated code.
"""

import re
from typing import List, Optional, Set, Tuple

from ffiber.compiler.contexts import FAILURE_SENTINEL, FunctionContext
from ffiber.compiler.descriptor import (
  RETURN_LEN_NAME,
  RETURN_NAME,
  SELF_NAME,
  FunctionArg,
  FunctionDescriptor,
  NamedParam,
  SelfParam,
  length_param,
)
from ffiber.compiler.engine import EmissionEngine
from ffiber.compiler.statements import (
  Arm,
  ArmBlock,
  Call,
  CloseScope,
  Let,
  Line,
  OpenFunction,
  OpenMatch,
  Reclaim,
  Release,
  Statement,
  StoreOut,
  replay,
)
from ffiber.enums import SelfMode
from ffiber.types import (
  LENGTH_TYPE,
  OPAQUE_POINTER,
  BoundaryType,
  Enum,
  MutRef,
  Primitive,
  Sequence,
  SharedRef,
  Struct,
  base_name,
  contains_self,
  to_abi_representation,
  to_native_declaration,
  to_native_path,
)

VALUE_NAME = "value"
RESERVED_NAMES = frozenset({SELF_NAME, RETURN_NAME, RETURN_LEN_NAME, VALUE_NAME})

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Strict and reserved keywords; `_` cannot be used as a value either.
RUST_KEYWORDS = frozenset(
  {
    "_", "abstract", "as", "async", "await", "become", "box", "break", "const", "continue",
    "crate", "do", "dyn", "else", "enum", "extern", "false", "final", "fn", "for", "if",
    "impl", "in", "let", "loop", "macro", "match", "mod", "move", "mut", "override", "priv",
    "pub", "ref", "return", "self", "Self", "static", "struct", "super", "trait", "true",
    "try", "type", "typeof", "unsafe", "unsized", "use", "virtual", "where", "while", "yield",
  }
)

# Keywords allowed as leading segments of a path (`crate::net::Conn`).
_PATH_QUALIFIERS = frozenset({"crate", "self", "super"})


def _check_ident(name: str, role: str) -> None:
  if not _IDENT_RE.match(name):
    raise ValueError(f"Invalid {role}: '{name}'")
  if name in RUST_KEYWORDS:
    raise ValueError(f"Invalid {role}: '{name}' is a Rust keyword")


def _check_path(path: str, role: str) -> None:
  segments = path.split("::")
  for segment in segments[:-1]:
    if segment not in _PATH_QUALIFIERS:
      _check_ident(segment, role)
  _check_ident(segments[-1], role)


def _check_type_names(ty: BoundaryType) -> None:
  """Checks that every struct path and enum variant spliced into the wrapper is an identifier."""
  if isinstance(ty, Struct):
    _check_path(ty.name, "struct name")
    for param in ty.params:
      _check_type_names(param)
  elif isinstance(ty, (SharedRef, MutRef)):
    _check_type_names(ty.inner)
  elif isinstance(ty, Sequence):
    _check_type_names(ty.elem)
  elif isinstance(ty, Enum):
    _check_path(ty.name, "enum name")
    for variant in ty.variants:
      _check_ident(variant, "enum variant")


class OwnershipMarshaller:
  """
  Compiles function descriptors into wrapper statements.

  The marshaller holds no state between descriptors and performs no I/O.
  """

  def compile(self, descriptor: FunctionDescriptor) -> List[Statement]:
    """
    Compiles one descriptor.

    Args:
        descriptor: The function to wrap.

    Returns:
        List[Statement]: The wrapper, from opening header to closing brace.

    Raises:
        ValueError: If the descriptor is malformed or uses an unsupported
            type/position combination.
    """
    self.validate(descriptor)

    context = FunctionContext(
      name=descriptor.symbol,
      is_extern=True,
      args=self.materialize_params(descriptor),
      ret_type=self._native_return_type(descriptor),
      needs_fallible_epilogue=descriptor.fallible,
    )
    plan: List[Statement] = [OpenFunction(context)]
    releases: List[Statement] = []

    # Phase 1
    plan.extend(self._unmarshal_receiver(descriptor, releases))

    # Phase 2
    call_args = []
    for name, ty in descriptor.args:
      stmts, expr = self._unmarshal_argument(name, ty, releases)
      plan.extend(stmts)
      call_args.append(expr)

    # Phase 3
    call = self._invocation(descriptor, call_args)
    has_value = descriptor.ret is not None
    if descriptor.fallible:
      # Phase 4
      plan.extend(self._dispatch_result(call, has_value, releases))
    else:
      plan.append(Call(call, binding=VALUE_NAME if has_value else None))

    # Phase 5
    plan.extend(self._marshal_return(descriptor))
    plan.extend(releases)
    if context.ret_type is not None:
      plan.append(Line(VALUE_NAME))

    plan.append(CloseScope())
    return plan

  def emit(self, descriptor: FunctionDescriptor, engine: EmissionEngine) -> List[Statement]:
    """
    Compiles a descriptor and writes the wrapper into `engine`.

    Nothing is written if compilation fails.

    Returns:
        List[Statement]: The plan that was emitted.
    """
    plan = self.compile(descriptor)
    replay(plan, engine)
    return plan

  def compile_destructor(self, owner: Struct, extern_name: Optional[str] = None) -> List[Statement]:
    """
    Compiles ``<Owner>_free``, which reclaims a handle and drops it.

    Args:
        owner: The opaque struct type.
        extern_name: Override for the exported symbol.

    Returns:
        List[Statement]: The destructor wrapper.
    """
    if not isinstance(owner, Struct) or contains_self(owner):
      raise ValueError(f"Destructor owner must be a concrete Struct, got {owner!r}")
    _check_type_names(owner)
    name = extern_name or f"{base_name(owner)}_free"
    return [
      OpenFunction(FunctionContext(name=name, is_extern=True, args=[SelfParam()])),
      Reclaim(SELF_NAME, to_native_declaration(owner)),
      Line(f"drop({SELF_NAME});"),
      CloseScope(),
    ]

  # --- Validation ---

  def validate(self, descriptor: FunctionDescriptor) -> None:
    """
    Checks a descriptor before any statement is produced.

    Raises:
        ValueError: On the first problem found.
    """
    _check_ident(descriptor.func_name, "function name")
    if descriptor.extern_name is not None:
      _check_ident(descriptor.extern_name, "exported symbol name")

    owner = descriptor.owner
    if owner is not None and not isinstance(owner, Struct):
      raise ValueError(f"Owner of '{descriptor.func_name}' must be a Struct, got {owner!r}")
    if descriptor.has_receiver and owner is None:
      raise ValueError(f"'{descriptor.func_name}' takes a receiver ({descriptor.self_mode.value}) but has no owner")
    if owner is not None and contains_self(owner):
      raise ValueError(f"Owner of '{descriptor.func_name}' cannot reference Self")
    if owner is not None:
      _check_type_names(owner)

    self._check_names(descriptor)

    for name, ty in descriptor.args:
      if contains_self(ty):
        raise ValueError(f"Argument '{name}' has an unresolved Self placeholder")
      _check_type_names(ty)
      self._check_argument(name, ty)

    if descriptor.ret is not None:
      if contains_self(descriptor.ret):
        raise ValueError(f"Return type of '{descriptor.func_name}' has an unresolved Self placeholder")
      _check_type_names(descriptor.ret)
      self._check_return(descriptor.ret, descriptor.fallible)

  def _check_names(self, descriptor: FunctionDescriptor) -> None:
    seen: Set[str] = set()
    for name, ty in descriptor.args:
      _check_ident(name, "argument name")
      if name in RESERVED_NAMES:
        raise ValueError(f"Argument name '{name}' is reserved")
      if name in seen:
        raise ValueError(f"Duplicate argument name: '{name}'")
      seen.add(name)
      if isinstance(ty, Sequence):
        companion = f"{name}_len"
        if companion in seen:
          raise ValueError(f"Length companion '{companion}' collides with another argument")
        seen.add(companion)

  def _check_argument(self, name: str, ty: BoundaryType) -> None:
    to_abi_representation(ty)
    if isinstance(ty, (Primitive, Struct)):
      return
    if isinstance(ty, (SharedRef, MutRef)):
      if not isinstance(ty.inner, Struct):
        raise ValueError(f"Argument '{name}': only references to structs can cross the boundary, got {ty!r}")
      return
    if isinstance(ty, Sequence):
      if not isinstance(ty.elem, Primitive):
        raise ValueError(f"Argument '{name}': sequences must hold primitives, got {ty!r}")
      return
    if isinstance(ty, Enum):
      if not ty.variants:
        raise ValueError(f"Argument '{name}': enum '{ty.name}' declares no variants")
      return
    raise TypeError(f"Unknown boundary type: {ty!r}")

  def _check_return(self, ty: BoundaryType, fallible: bool) -> None:
    to_abi_representation(ty, is_return=True)
    if isinstance(ty, (Primitive, Struct)):
      return
    if isinstance(ty, (SharedRef, MutRef)):
      if not isinstance(ty.inner, (Struct, Primitive)):
        raise ValueError(f"Returned references must point to a struct or primitive, got {ty!r}")
      return
    if isinstance(ty, Sequence):
      if not fallible:
        raise ValueError("Sequence returns require the fallible protocol")
      if not isinstance(ty.elem, (Primitive, Struct)):
        raise ValueError(f"Returned sequences must hold primitives or structs, got {ty!r}")
      return
    if isinstance(ty, Enum):
      raise ValueError(f"Enum '{ty.name}' cannot be returned across the boundary")
    raise TypeError(f"Unknown boundary type: {ty!r}")

  # --- Signature ---

  def materialize_params(self, descriptor: FunctionDescriptor) -> List[FunctionArg]:
    """
    Builds the C parameter list of the wrapper.

    Order: receiver, then each argument (a sequence is followed by its
    length), then the return out-pointer and, for sequences, the length
    out-pointer.
    """
    params: List[FunctionArg] = []
    if descriptor.has_receiver:
      params.append(SelfParam())
    for name, ty in descriptor.args:
      abi = to_abi_representation(ty)
      params.append(NamedParam(name, abi.scalar))
      if abi.has_length:
        params.append(length_param(name))
    ret = descriptor.ret
    if ret is not None and (descriptor.fallible or not isinstance(ret, Primitive)):
      abi = to_abi_representation(ret, is_return=True)
      params.append(NamedParam(RETURN_NAME, abi.scalar, is_return_out=True))
      if abi.has_length:
        params.append(NamedParam(RETURN_LEN_NAME, LENGTH_TYPE, is_return_length_out=True))
    return params

  def _native_return_type(self, descriptor: FunctionDescriptor) -> Optional[str]:
    if isinstance(descriptor.ret, Primitive) and not descriptor.fallible:
      return descriptor.ret.name
    return None

  # --- Phase 1 ---

  def _unmarshal_receiver(self, descriptor: FunctionDescriptor, releases: List[Statement]) -> List[Statement]:
    mode = descriptor.self_mode
    if mode == SelfMode.NONE:
      return []
    native = to_native_declaration(descriptor.owner)
    # Borrowed receivers stay boxed and are handed back; owned ones are moved out.
    if mode.is_reference:
      releases.append(Release(SELF_NAME))
    return [Reclaim(SELF_NAME, native, mutable=mode.is_mutable, consume=not mode.is_reference)]

  # --- Phase 2 ---

  def _unmarshal_argument(
    self, name: str, ty: BoundaryType, releases: List[Statement]
  ) -> Tuple[List[Statement], str]:
    """
    Returns the statements rebuilding one argument and the expression passed
    to the native call.
    """
    if isinstance(ty, Primitive):
      return [], name
    if isinstance(ty, Struct):
      return [Reclaim(name, to_native_declaration(ty), consume=True)], name
    if isinstance(ty, SharedRef):
      releases.append(Release(name))
      return [Reclaim(name, to_native_declaration(ty.inner))], f"&*{name}"
    if isinstance(ty, MutRef):
      releases.append(Release(name))
      return [Reclaim(name, to_native_declaration(ty.inner), mutable=True)], f"&mut *{name}"
    if isinstance(ty, Sequence):
      view = Let(
        name,
        f"std::slice::from_raw_parts({name}, {name}_len)",
        type_name=f"&[{to_native_declaration(ty.elem)}]",
        unchecked=True,
      )
      return [view], name
    if isinstance(ty, Enum):
      return self._decode_enum(name, ty), name
    raise TypeError(f"Unknown boundary type: {ty!r}")

  def _decode_enum(self, name: str, ty: Enum) -> List[Statement]:
    """One arm per ordinal, then a default arm that aborts the process."""
    patterns = [str(i) for i in range(len(ty.variants))] + ["_"]
    stmts: List[Statement] = [OpenMatch(name, patterns, binding=name)]
    for variant in ty.variants:
      stmts.append(Arm(f"{ty.name}::{variant}"))
    stmts.append(Arm("std::process::abort()"))
    stmts.append(CloseScope())
    return stmts

  # --- Phase 3 ---

  def _invocation(self, descriptor: FunctionDescriptor, call_args: List[str]) -> str:
    joined = ", ".join(call_args)
    if descriptor.has_receiver:
      return f"{SELF_NAME}.{descriptor.func_name}({joined})"
    if descriptor.owner is not None:
      return f"{to_native_path(descriptor.owner)}::{descriptor.func_name}({joined})"
    return f"{descriptor.func_name}({joined})"

  # --- Phase 4 ---

  def _dispatch_result(self, call: str, has_value: bool, releases: List[Statement]) -> List[Statement]:
    """
    Two-armed dispatch on the call result.

    The failure arm hands borrowed handles back before returning the failure
    sentinel, and never touches the out-pointers.
    """
    ok_pattern = f"Ok({VALUE_NAME})" if has_value else "Ok(_)"
    failure = ArmBlock(list(releases) + [Line(f"return {FAILURE_SENTINEL};")])
    return [
      OpenMatch(call, [ok_pattern, "Err(_)"], binding=VALUE_NAME if has_value else None),
      Arm(VALUE_NAME if has_value else "{}"),
      failure,
      CloseScope(),
    ]

  # --- Phase 5 ---

  def _marshal_return(self, descriptor: FunctionDescriptor) -> List[Statement]:
    ret = descriptor.ret
    if ret is None:
      return []
    if isinstance(ret, Primitive):
      if descriptor.fallible:
        return [StoreOut(RETURN_NAME, VALUE_NAME)]
      return []
    if isinstance(ret, Struct):
      return [StoreOut(RETURN_NAME, f"Box::into_raw(Box::new({VALUE_NAME})) as {OPAQUE_POINTER}")]
    if isinstance(ret, SharedRef):
      inner = to_native_declaration(ret.inner)
      return [StoreOut(RETURN_NAME, f"{VALUE_NAME} as *const {inner} as {OPAQUE_POINTER}")]
    if isinstance(ret, MutRef):
      inner = to_native_declaration(ret.inner)
      return [StoreOut(RETURN_NAME, f"{VALUE_NAME} as *mut {inner} as {OPAQUE_POINTER}")]
    if isinstance(ret, Sequence):
      boxed = Let(
        VALUE_NAME,
        f"{VALUE_NAME}.into_iter().map(|elem| Box::into_raw(Box::new(elem)) as {OPAQUE_POINTER}).collect()",
        type_name=f"Box<[{OPAQUE_POINTER}]>",
      )
      return [
        boxed,
        StoreOut(RETURN_LEN_NAME, f"{VALUE_NAME}.len()"),
        StoreOut(RETURN_NAME, f"Box::into_raw({VALUE_NAME}) as *mut {OPAQUE_POINTER}"),
      ]
    if isinstance(ret, Enum):
      raise ValueError(f"Enum '{ret.name}' cannot be returned across the boundary")
    raise TypeError(f"Unknown boundary type: {ret!r}")
