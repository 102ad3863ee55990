"""
Package Assembler.

`CDylibCompiler` is the registration API of a generation run. Functions
registered on it are marshalled into one ``lib.rs``; `flush()` wraps that
source into a ``cdylib`` crate with a ``Cargo.toml`` and a ``build.rs`` that
runs cbindgen to produce the C header::

    <package-name>-c/
        src/
            lib.rs
        build.rs
        Cargo.toml

Usage:

.. code-block:: python

    from ffiber import CDylibCompiler, SelfMode
    from ffiber.types import Primitive, new_struct

    compiler = CDylibCompiler("mlx5-datapath", ".")
    compiler.add_crate("mlx5-datapath", {"path": "../mlx5-datapath"})
    compiler.add_dependency("mlx5_datapath::datapath::connection::Mlx5Connection")
    compiler.add_extern_c_function(
      new_struct("Mlx5Connection"),
      "set_copying_threshold",
      SelfMode.REF_MUT,
      [("copying_threshold", Primitive("usize"))],
    )
    compiler.flush()
"""

import json
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from rich.markup import escape

from ffiber.compiler.contexts import FunctionContext
from ffiber.compiler.descriptor import FunctionDescriptor
from ffiber.compiler.engine import EmissionEngine
from ffiber.compiler.marshaller import OwnershipMarshaller
from ffiber.compiler.statements import replay
from ffiber.config import GeneratorConfig
from ffiber.enums import DerivedTrait, SelfMode
from ffiber.types import BoundaryType, Primitive, SharedRef, Struct, base_name, resolve_self
from ffiber.utils.console import log_debug, log_info, log_success, log_warning

CrateOptions = Union[Mapping[str, Any], Sequence[Tuple[str, Any]]]


def _toml_value(value: Any) -> str:
  """Renders a Python value as an inline TOML value."""
  if isinstance(value, bool):
    return "true" if value else "false"
  if isinstance(value, (int, float)):
    return str(value)
  if isinstance(value, str):
    return json.dumps(value)
  if isinstance(value, (list, tuple)):
    return "[" + ", ".join(_toml_value(v) for v in value) + "]"
  raise ValueError(f"Cannot render {value!r} as a Cargo.toml value")


def gen_build_rs(package_name: str, package_folder: Path, config: GeneratorConfig) -> Path:
  """
  Writes ``build.rs``, which runs cbindgen to emit ``<package_name>.h``.

  Args:
      package_name: Underscored package name; also the header stem.
      package_folder: Root of the generated crate.
      config: Run configuration (header language).

  Returns:
      Path: The written file.
  """
  engine = EmissionEngine()
  engine.add_extern_crate("cbindgen")
  engine.add_newline()
  engine.add_dependency("std::{env, path::PathBuf}")
  engine.add_dependency("cbindgen::Config")
  engine.add_newline()

  with engine.push_context(FunctionContext("main")):
    engine.add_def_with_let("cargo_manifest_dir", 'env::var("CARGO_MANIFEST_DIR").unwrap()')
    engine.add_def_with_let(
      "output_file",
      f'PathBuf::from(&cargo_manifest_dir).join("{package_name}.h").display().to_string()',
    )
    engine.add_def_with_let(
      "config",
      f"Config {{ language: cbindgen::Language::{config.header_language}, ..Default::default() }}",
    )
    engine.add_line(
      "cbindgen::generate_with_config(&cargo_manifest_dir, config).unwrap().write_to_file(&output_file);"
    )

  path = package_folder / "build.rs"
  engine.flush(path)
  return path


def gen_cargo_toml(package_name: str, package_folder: Path, crates: List[str], config: GeneratorConfig) -> Path:
  """
  Writes the crate manifest.

  Args:
      package_name: Underscored package name.
      package_folder: Root of the generated crate.
      crates: Rendered ``[dependencies]`` entries.
      config: Run configuration (edition, cbindgen version).

  Returns:
      Path: The written file.
  """
  package_name_c = f"{package_name.replace('_', '-')}-c"

  engine = EmissionEngine()
  engine.add_line("[package]")
  engine.add_line(f'name = "{package_name_c}"')
  engine.add_line('version = "0.1.0"')
  engine.add_line(f'edition = "{config.edition}"')
  engine.add_newline()

  engine.add_line("[lib]")
  engine.add_line(f'name = "{package_name}_c"')
  engine.add_line('path = "src/lib.rs"')
  engine.add_line('crate-type = ["cdylib"]')
  engine.add_newline()

  engine.add_line("[dependencies]")
  for line in crates:
    engine.add_line(line)
  engine.add_newline()

  engine.add_line("[build-dependencies]")
  engine.add_line(f'cbindgen = "{config.cbindgen_version}"')
  engine.add_newline()

  # Keep the generated crate out of any enclosing workspace
  engine.add_line("[workspace]")

  path = package_folder / "Cargo.toml"
  engine.flush(path)
  return path


def run_formatter(paths: Iterable[Path], config: GeneratorConfig) -> None:
  """
  Runs the configured formatter over generated sources.

  Raises:
      FileNotFoundError: If the formatter executable is missing.
      subprocess.CalledProcessError: If the formatter rejects a file.
  """
  cmd = [*config.formatter_command, *(str(p) for p in paths)]
  log_info(f"Formatting with [code]{escape(' '.join(cmd))}[/code]")
  subprocess.run(cmd, check=True, capture_output=True, text=True)


class CDylibCompiler:
  """
  Collects boundary functions and crate dependencies for one ``cdylib``.

  Attributes:
      package_name (str): Underscored package name (``mlx5_datapath``).
      package_name_c (str): Generated crate name (``mlx5-datapath-c``).
      package_folder (Path): Output directory of the generated crate.
      engine (EmissionEngine): Buffer holding the wrapper functions.
      descriptors (List[FunctionDescriptor]): Registered descriptors, in order.
      signatures (List[FunctionContext]): Every exported wrapper, destructors
          included, in emission order.
  """

  def __init__(self, package_name: str, output_folder: Union[str, Path], config: Optional[GeneratorConfig] = None):
    """
    Initializes a compiler for a crate generated under `output_folder`.

    Args:
        package_name: Name of the wrapped package; dashes become underscores.
        output_folder: Directory receiving ``<package-name>-c``.
        config: Run configuration. Defaults to `GeneratorConfig()`.
    """
    self.package_name = package_name.replace("-", "_")
    self.package_name_c = f"{self.package_name.replace('_', '-')}-c"
    self.package_folder = Path(output_folder) / self.package_name_c
    self.config = config or GeneratorConfig()

    self.engine = EmissionEngine()
    self.marshaller = OwnershipMarshaller()
    self.descriptors: List[FunctionDescriptor] = []
    self.signatures: List[FunctionContext] = []
    self._crates: List[str] = []
    self._imports: List[str] = []
    self._symbols: Dict[str, str] = {}

  # --- Dependencies ---

  def add_crate(self, crate_name: str, options: CrateOptions) -> None:
    """
    Adds a dependency to the generated Cargo.toml.

    Args:
        crate_name: Crate name.
        options: Key/value configuration, e.g. ``{"path": "../lib"}`` or
            ``[("git", "https://..."), ("features", ["collections"])]``.

    Raises:
        ValueError: If no options are given.
    """
    items = list(options.items()) if isinstance(options, Mapping) else list(options)
    if not items:
      raise ValueError(f"Crate '{crate_name}' needs at least one option (version, path, git, ...)")
    rendered = ", ".join(f"{key} = {_toml_value(value)}" for key, value in items)
    self._crates.append(f"{crate_name} = {{ {rendered} }}")

  def add_crate_version(self, crate_name: str, version: str) -> None:
    """Adds a specific version of a crate to the Cargo.toml."""
    self.add_crate(crate_name, {"version": version})

  def add_crate_path(self, crate_name: str, path: str) -> None:
    """Adds a crate, by path, to the Cargo.toml."""
    self.add_crate(crate_name, {"path": path})

  def add_dependency(self, dependency: str) -> None:
    """Adds ``use <dependency>;`` to the generated lib.rs."""
    self._imports.append(dependency)

  @property
  def crates(self) -> List[str]:
    return list(self._crates)

  # --- Functions ---

  def add_extern_c_function(
    self,
    owner: BoundaryType,
    func_name: str,
    self_mode: Optional[SelfMode] = None,
    args: Sequence[Tuple[str, BoundaryType]] = (),
    ret: Optional[BoundaryType] = None,
    fallible: bool = False,
    extern_name: Optional[str] = None,
  ) -> FunctionDescriptor:
    """
    Adds an extern "C" wrapper around a function defined on a struct.

    Args:
        owner: The struct the function is defined on.
        func_name: The name of the method or associated function.
        self_mode: How the receiver is taken, or None for an associated function.
        args: Names and types of the arguments.
        ret: Return type, if there is one.
        fallible: The function returns a Result; use the 0/1 sentinel.
        extern_name: Exported symbol, ``<Owner>_<func_name>`` by default.

    Returns:
        FunctionDescriptor: The registered descriptor.

    Raises:
        ValueError: If the descriptor is malformed or unsupported. Nothing is
            emitted in that case.
    """
    if not isinstance(owner, Struct):
      raise ValueError(f"Owner of '{func_name}' must be a Struct, got {owner!r}")
    descriptor = FunctionDescriptor(
      func_name=func_name,
      owner=owner,
      self_mode=self_mode or SelfMode.NONE,
      args=[(name, resolve_self(ty, owner)) for name, ty in args],
      ret=resolve_self(ret, owner) if ret is not None else None,
      fallible=fallible,
      extern_name=extern_name,
    )
    return self._register(descriptor)

  def add_extern_c_free_function(
    self,
    func_name: str,
    args: Sequence[Tuple[str, BoundaryType]] = (),
    ret: Optional[BoundaryType] = None,
    fallible: bool = False,
    extern_name: Optional[str] = None,
  ) -> FunctionDescriptor:
    """
    Adds an extern "C" wrapper around a standalone function.

    Same arguments as `add_extern_c_function`, without owner and receiver.
    """
    descriptor = FunctionDescriptor(
      func_name=func_name,
      args=list(args),
      ret=ret,
      fallible=fallible,
      extern_name=extern_name,
    )
    return self._register(descriptor)

  def add_opaque_struct(self, struct: Struct, traits: Iterable[DerivedTrait] = ()) -> None:
    """
    Adds the functions backing a C handle to a native struct.

    Always emits ``<Struct>_free``. Derived traits add ``<Struct>_default``
    (Default), ``<Struct>_clone`` (Clone) and ``<Struct>_eq`` (PartialEq/Eq).

    Args:
        struct: The native struct.
        traits: Traits derived by the struct.
    """
    if not isinstance(struct, Struct):
      raise ValueError(f"Opaque struct must be a Struct, got {struct!r}")
    plan = self.marshaller.compile_destructor(struct)
    self._claim_symbol(plan[0].context.name, f"{struct.name} destructor")
    replay(plan, self.engine)
    self.signatures.append(plan[0].context)

    wanted = set(traits)
    if DerivedTrait.DEFAULT in wanted:
      self.add_extern_c_function(struct, "default", ret=struct)
    if DerivedTrait.CLONE in wanted:
      self.add_extern_c_function(struct, "clone", args=[("source", SharedRef(struct))], ret=struct)
    if {DerivedTrait.PARTIAL_EQ, DerivedTrait.EQ} <= wanted:
      log_warning(f"[code]{escape(base_name(struct))}[/code] derives PartialEq and Eq; both share one _eq wrapper")
    if wanted & {DerivedTrait.PARTIAL_EQ, DerivedTrait.EQ}:
      self.add_extern_c_function(
        struct,
        "eq",
        args=[("left", SharedRef(struct)), ("right", SharedRef(struct))],
        ret=Primitive("bool"),
      )

  def _register(self, descriptor: FunctionDescriptor) -> FunctionDescriptor:
    plan = self.marshaller.compile(descriptor)
    self._claim_symbol(descriptor.symbol, descriptor.func_name)
    replay(plan, self.engine)
    self.descriptors.append(descriptor)
    self.signatures.append(plan[0].context)
    log_debug(f"Registered [code]{escape(descriptor.symbol)}[/code]")
    return descriptor

  def _claim_symbol(self, symbol: str, origin: str) -> None:
    if symbol in self._symbols:
      raise ValueError(
        f"Exported symbol '{symbol}' for '{origin}' already used by '{self._symbols[symbol]}'; pass an extern_name"
      )
    self._symbols[symbol] = origin

  # --- Output ---

  def render_lib_rs(self) -> str:
    """
    Returns the generated lib.rs text: imports, then every wrapper in
    registration order.
    """
    header = EmissionEngine()
    for dependency in self._imports:
      header.add_dependency(dependency)
    parts = [header.to_source(), self.engine.to_source()]
    return "\n".join(part for part in parts if part)

  def flush(self) -> Path:
    """
    Writes the crate to the output folder and runs the formatter.

    Returns:
        Path: The crate root.

    Raises:
        ValueError: If a wrapper scope is still open.
        OSError: On write failures.
        subprocess.CalledProcessError: If the formatter fails.
    """
    if self.engine.current_context is not None:
      raise ValueError("Cannot flush while a wrapper scope is still open")

    src_folder = self.package_folder / "src"
    src_folder.mkdir(parents=True, exist_ok=True)

    build_rs = gen_build_rs(self.package_name, self.package_folder, self.config)
    gen_cargo_toml(self.package_name, self.package_folder, self._crates, self.config)
    lib_rs = src_folder / "lib.rs"
    lib_rs.write_text(self.render_lib_rs(), encoding="utf-8")
    log_info(f"Wrote [path]{escape(str(self.package_folder))}[/path] ({len(self._symbols)} exported functions)")

    if self.config.run_formatter:
      run_formatter([lib_rs, build_rs], self.config)

    log_success(f"Generated crate [bold]{escape(self.package_name_c)}[/bold]")
    return self.package_folder
