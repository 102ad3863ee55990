"""
Generator Configuration.

Settings for the generated package and the external tools run on it. Values
come from ``[tool.ffiber]`` in the nearest ``pyproject.toml`` and can be
overridden by explicit arguments (e.g. CLI flags).
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, ValidationInfo, field_validator

if sys.version_info >= (3, 11):
  import tomllib
else:
  import tomli as tomllib


class GeneratorConfig(BaseModel):
  """
  Configuration container for a generation run.
  """

  edition: str = Field("2021", description="Rust edition declared in the generated Cargo.toml.")
  cbindgen_version: str = Field("0.26.0", description="cbindgen build-dependency version.")
  header_language: str = Field("C", description="Header language passed to cbindgen ('C' or 'Cxx').")
  run_formatter: bool = Field(True, description="Run the formatter over generated sources after writing.")
  formatter_command: List[str] = Field(
    None,
    validate_default=True,
    description="Formatter executable and leading arguments; file paths are appended. "
    "Defaults to rustfmt for the configured edition.",
  )

  @field_validator("header_language")
  @classmethod
  def validate_language(cls, v: str) -> str:
    """
    Ensures the header language is one cbindgen knows.

    Args:
        v (str): Requested language.

    Returns:
        str: The canonical spelling.

    Raises:
        ValueError: For unknown languages.
    """
    canonical = {"c": "C", "cxx": "Cxx", "c++": "Cxx"}
    key = v.strip().lower()
    if key not in canonical:
      raise ValueError(f"Unsupported header language: '{v}'. Expected one of C, Cxx.")
    return canonical[key]

  @field_validator("formatter_command", mode="before")
  @classmethod
  def default_formatter(cls, v: Optional[List[str]], info: ValidationInfo) -> List[str]:
    if v is None:
      return ["rustfmt", "--edition", info.data.get("edition", "2021")]
    return v

  @field_validator("formatter_command")
  @classmethod
  def validate_formatter(cls, v: List[str]) -> List[str]:
    if not v:
      raise ValueError("formatter_command must name an executable")
    return v

  @classmethod
  def load(
    cls,
    search_path: Optional[Path] = None,
    run_formatter: Optional[bool] = None,
    **overrides: Any,
  ) -> "GeneratorConfig":
    """
    Loads configuration from pyproject.toml and applies overrides.

    Args:
        search_path (Optional[Path]): Directory to start searching for TOML config.
        run_formatter (Optional[bool]): Override for formatter execution.
        **overrides: Any other field, applied when not None.

    Returns:
        GeneratorConfig: The resolved configuration.
    """
    start_dir = search_path or Path.cwd()
    settings, _ = _load_toml_settings(start_dir)

    if run_formatter is not None:
      settings["run_formatter"] = run_formatter
    for key, value in overrides.items():
      if value is not None:
        settings[key] = value

    return cls(**settings)


def _load_toml_settings(start_path: Path) -> Tuple[Dict[str, Any], Optional[Path]]:
  """
  Searches `start_path` and its parents for 'pyproject.toml' and extracts
  the ``[tool.ffiber]`` table.

  Args:
      start_path (Path): Directory to start search from.

  Returns:
      Tuple[Dict, Optional[Path]]: The config dict and the directory it was found in.
  """
  current = start_path.resolve()

  for parent in [current, *current.parents]:
    toml_path = parent / "pyproject.toml"
    if toml_path.is_file():
      with open(toml_path, "rb") as f:
        data = tomllib.load(f)
      return dict(data.get("tool", {}).get("ffiber", {})), parent

  return {}, None
