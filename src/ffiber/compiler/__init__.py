"""
Compiler Package.

Holds the descriptor model, the scoped emission engine and the
ownership-transfer marshaller that turns descriptors into C ABI wrappers.
"""

from ffiber.compiler.contexts import FunctionContext, MatchContext
from ffiber.compiler.descriptor import FunctionDescriptor, NamedParam, SelfParam
from ffiber.compiler.engine import EmissionEngine, ScopeGuard
from ffiber.compiler.marshaller import OwnershipMarshaller

__all__ = [
  "EmissionEngine",
  "FunctionContext",
  "FunctionDescriptor",
  "MatchContext",
  "NamedParam",
  "OwnershipMarshaller",
  "ScopeGuard",
  "SelfParam",
]
