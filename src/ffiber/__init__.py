"""
ffiber Package.

Generates a C ABI wrapper crate around an existing Rust library. Each
registered function becomes an ``extern "C"`` wrapper that moves values across
the boundary as opaque pointers; cbindgen then emits the matching C header.

Usage
-----

Manifest Driven
^^^^^^^^^^^^^^^

.. code-block:: python

    import ffiber
    crate_dir = ffiber.generate("ffi.toml", output="build")

Programmatic
^^^^^^^^^^^^

.. code-block:: python

    from ffiber import CDylibCompiler, SelfMode
    from ffiber.types import Primitive, new_struct

    compiler = CDylibCompiler("bumpalo", "build")
    compiler.add_crate("bumpalo", {"version": "3"})
    compiler.add_dependency("bumpalo::Bump")
    compiler.add_extern_c_function(new_struct("Bump"), "reset", SelfMode.REF_MUT)
    compiler.flush()
"""

from pathlib import Path
from typing import Optional, Union

from ffiber.config import GeneratorConfig
from ffiber.enums import DerivedTrait, SelfMode
from ffiber.manifest import Manifest, build_compiler, load_manifest
from ffiber.package import CDylibCompiler

__version__ = "0.1.0"


def generate(
  manifest_path: Union[str, Path],
  output: Optional[Union[str, Path]] = None,
  run_formatter: Optional[bool] = None,
) -> Path:
  """
  Generates the wrapper crate described by a manifest file.

  Args:
      manifest_path: The TOML descriptor manifest.
      output: Overrides the manifest's output directory.
      run_formatter: Overrides the configured formatter toggle.

  Returns:
      Path: Root of the generated crate.

  Raises:
      ValueError: If the manifest or one of its descriptors is invalid.
  """
  path = Path(manifest_path)
  config = GeneratorConfig.load(search_path=path.parent, run_formatter=run_formatter)
  manifest = load_manifest(path)
  compiler = build_compiler(
    manifest,
    path.parent,
    output=Path(output) if output is not None else None,
    config=config,
  )
  return compiler.flush()


__all__ = [
  "CDylibCompiler",
  "DerivedTrait",
  "GeneratorConfig",
  "Manifest",
  "SelfMode",
  "build_compiler",
  "generate",
  "load_manifest",
  "__version__",
]
