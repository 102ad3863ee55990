"""
Descriptor Manifests.

A manifest is a TOML file listing everything a generation run registers, so
a crate can be generated without writing a driver script:

.. code-block:: toml

    [package]
    name = "mlx5-datapath"
    imports = ["bumpalo::Bump"]

    [crates.bumpalo]
    git = "https://github.com/deeptir18/bumpalo"
    features = ["collections"]

    [enums.Mode]
    variants = ["Fast", "Slow"]

    [[structs]]
    name = "Bump"
    traits = ["default"]

    [[functions]]
    owner = "Bump"
    name = "reset"
    self = "ref_mut"

Types are written as native type expressions and parsed with
`ffiber.types.parse_type`; names declared under ``[enums]`` parse as enums.
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ffiber.config import GeneratorConfig
from ffiber.enums import DerivedTrait, SelfMode
from ffiber.package import CDylibCompiler
from ffiber.types import BoundaryType, Struct, parse_type

if sys.version_info >= (3, 11):
  import tomllib
else:
  import tomli as tomllib


class PackageSpec(BaseModel):
  name: str = Field(..., description="Name of the wrapped package.")
  output: Path = Field(Path("."), description="Directory receiving the generated crate.")
  imports: List[str] = Field(default_factory=list, description="Paths imported into lib.rs with `use`.")


class EnumSpec(BaseModel):
  variants: List[str] = Field(..., description="Variant names in declaration order.")

  @field_validator("variants")
  @classmethod
  def validate_variants(cls, v: List[str]) -> List[str]:
    if not v:
      raise ValueError("an enum needs at least one variant")
    if len(set(v)) != len(v):
      raise ValueError(f"duplicate variants in {v}")
    return v


class StructSpec(BaseModel):
  name: str
  traits: List[DerivedTrait] = Field(default_factory=list)


class ArgSpec(BaseModel):
  model_config = ConfigDict(populate_by_name=True)

  name: str
  type_name: str = Field(..., alias="type")


class FunctionSpec(BaseModel):
  """One ``[[functions]]`` entry."""

  model_config = ConfigDict(populate_by_name=True)

  name: str
  owner: Optional[str] = None
  self_mode: SelfMode = Field(SelfMode.NONE, alias="self")
  args: List[ArgSpec] = Field(default_factory=list)
  ret: Optional[str] = None
  fallible: bool = False
  extern_name: Optional[str] = None


class Manifest(BaseModel):
  """
  Root of a descriptor manifest.
  """

  package: PackageSpec
  crates: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
  enums: Dict[str, EnumSpec] = Field(default_factory=dict)
  structs: List[StructSpec] = Field(default_factory=list)
  functions: List[FunctionSpec] = Field(default_factory=list)

  @property
  def enum_table(self) -> Dict[str, List[str]]:
    return {name: spec.variants for name, spec in self.enums.items()}


def load_manifest(path: Path) -> Manifest:
  """
  Reads and validates a manifest file.

  Args:
      path (Path): The TOML manifest.

  Returns:
      Manifest: The validated model.

  Raises:
      ValueError: If the TOML is malformed or fails validation.
  """
  try:
    with open(path, "rb") as f:
      data = tomllib.load(f)
  except tomllib.TOMLDecodeError as e:
    raise ValueError(f"Invalid TOML in '{path}': {e}") from e

  try:
    return Manifest.model_validate(data)
  except ValidationError as e:
    raise ValueError(f"Invalid manifest '{path}': {e}") from e


def _parse_struct(text: str, enums: Dict[str, List[str]], role: str) -> Struct:
  ty = parse_type(text, enums)
  if not isinstance(ty, Struct):
    raise ValueError(f"{role} '{text}' must be a struct type")
  return ty


def build_compiler(
  manifest: Manifest,
  base_dir: Path,
  output: Optional[Path] = None,
  config: Optional[GeneratorConfig] = None,
) -> CDylibCompiler:
  """
  Registers everything a manifest declares on a new `CDylibCompiler`.

  Args:
      manifest: The validated manifest.
      base_dir: Directory relative output paths are resolved against.
      output: Overrides the manifest's output directory.
      config: Run configuration.

  Returns:
      CDylibCompiler: A compiler ready to `flush()`.

  Raises:
      ValueError: On the first invalid type or descriptor.
  """
  out_dir = output if output is not None else manifest.package.output
  if not out_dir.is_absolute():
    out_dir = base_dir / out_dir

  compiler = CDylibCompiler(manifest.package.name, out_dir, config=config)
  enums = manifest.enum_table

  for crate_name, options in manifest.crates.items():
    compiler.add_crate(crate_name, options)
  for dependency in manifest.package.imports:
    compiler.add_dependency(dependency)

  for struct in manifest.structs:
    compiler.add_opaque_struct(_parse_struct(struct.name, enums, "Struct"), struct.traits)

  for func in manifest.functions:
    args = [(arg.name, parse_type(arg.type_name, enums)) for arg in func.args]
    ret: Optional[BoundaryType] = parse_type(func.ret, enums) if func.ret else None
    if func.owner:
      owner = _parse_struct(func.owner, enums, f"Owner of '{func.name}'")
      compiler.add_extern_c_function(owner, func.name, func.self_mode, args, ret, func.fallible, func.extern_name)
    elif func.self_mode != SelfMode.NONE:
      raise ValueError(f"Function '{func.name}' takes a receiver but declares no owner")
    else:
      compiler.add_extern_c_free_function(func.name, args, ret, func.fallible, func.extern_name)

  return compiler
