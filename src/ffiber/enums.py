"""
Enumerations for ffiber.

This module defines the enumerations shared by the descriptor model, the
marshaller and the package assembler.
"""

from enum import Enum


class SelfMode(str, Enum):
  """
  How the receiver of a method crosses the boundary.

  The C caller always hands over an opaque pointer; the mode decides whether
  the wrapper takes ownership of it or only borrows it for the call.
  """

  NONE = "none"  # no receiver (associated or free function)
  VALUE = "value"  # self
  REF = "ref"  # &self
  REF_MUT = "ref_mut"  # &mut self
  VALUE_MUT = "value_mut"  # mut self

  @property
  def is_reference(self) -> bool:
    """True if the receiver is only borrowed and must be re-released."""
    return self in (SelfMode.REF, SelfMode.REF_MUT)

  @property
  def is_mutable(self) -> bool:
    """True if the reconstructed binding has to be declared `mut`."""
    return self in (SelfMode.REF_MUT, SelfMode.VALUE_MUT)


class DerivedTrait(str, Enum):
  """
  Derived traits of an opaque struct that get their own exported wrapper.
  """

  DEFAULT = "default"
  CLONE = "clone"
  PARTIAL_EQ = "partial_eq"
  EQ = "eq"
