"""
Tests for the Scoped Emission Engine.

Verifies:
1.  **Indentation**: Four spaces per open scope, extra level inside arm blocks.
2.  **Scope Guards**: LIFO closing, double-close detection, context manager use.
3.  **Match Scopes**: Arms are checked against the declared list.
4.  **Flush**: Refuses to write with open scopes; output ends in one newline.
"""

import pytest

from ffiber.compiler.contexts import FunctionContext, MatchContext
from ffiber.compiler.descriptor import NamedParam, SelfParam
from ffiber.compiler.engine import EmissionEngine


def test_function_scope_indents_body():
  engine = EmissionEngine()
  with engine.push_context(FunctionContext("main")):
    engine.add_def_with_let("x", "1")
  assert engine.to_source() == "fn main() {\n    let x = 1;\n}\n"


def test_extern_header_and_params():
  engine = EmissionEngine()
  ctx = FunctionContext("Conn_len", is_extern=True, args=[SelfParam(), NamedParam("n", "usize")], ret_type="usize")
  with engine.push_context(ctx):
    engine.add_line("n")
  lines = engine.lines
  assert lines[0] == "#[no_mangle]"
  assert lines[1] == 'pub extern "C" fn Conn_len(self_: *mut ::std::os::raw::c_void, n: usize) -> usize {'
  assert lines[2] == "    n"
  assert lines[3] == "}"


def test_fallible_epilogue_returns_success():
  engine = EmissionEngine()
  with engine.push_context(FunctionContext("f", is_extern=True, ret_type="usize", needs_fallible_epilogue=True)):
    pass
  assert engine.lines[1].endswith("-> u32 {")
  assert engine.lines[2] == "    0"


def test_nested_match_with_block_arm():
  engine = EmissionEngine()
  with engine.push_context(FunctionContext("f")):
    with engine.push_context(MatchContext("g()", ["Ok(value)", "Err(_)"], binding="value")):
      engine.add_arm("value")
      engine.begin_arm()
      engine.add_line("return 1;")
      engine.end_arm()
  assert engine.to_source() == (
    "fn f() {\n"
    "    let value = match g() {\n"
    "        Ok(value) => value,\n"
    "        Err(_) => {\n"
    "            return 1;\n"
    "        }\n"
    "    };\n"
    "}\n"
  )


def test_match_requires_enclosing_function():
  engine = EmissionEngine()
  with pytest.raises(ValueError, match="nested inside a function"):
    engine.push_context(MatchContext("x", ["_"]))


def test_non_exhaustive_match_cannot_close():
  engine = EmissionEngine()
  engine.push_context(FunctionContext("f"))
  engine.push_context(MatchContext("x", ["0", "_"]))
  engine.add_arm("a")
  with pytest.raises(ValueError, match="Non-exhaustive"):
    engine.pop_context()


def test_extra_arm_rejected():
  engine = EmissionEngine()
  engine.push_context(FunctionContext("f"))
  engine.push_context(MatchContext("x", ["_"]))
  engine.add_arm("a")
  with pytest.raises(ValueError, match="already emitted"):
    engine.add_arm("b")


def test_arms_outside_match_rejected():
  engine = EmissionEngine()
  engine.push_context(FunctionContext("f"))
  with pytest.raises(ValueError, match="inside a match"):
    engine.add_arm("a")


def test_guards_close_in_reverse_order():
  engine = EmissionEngine()
  outer = engine.push_context(FunctionContext("f"))
  inner = engine.push_context(MatchContext("x", ["_"]))
  with pytest.raises(ValueError, match="reverse order"):
    outer.close()
  engine.add_arm("()")
  inner.close()
  outer.close()
  with pytest.raises(ValueError, match="already closed"):
    outer.close()
  assert engine.current_context is None


def test_pop_without_scope():
  with pytest.raises(ValueError, match="No open scope"):
    EmissionEngine().pop_context()


def test_top_level_functions_are_separated():
  engine = EmissionEngine()
  for name in ("a", "b"):
    with engine.push_context(FunctionContext(name)):
      pass
  assert engine.to_source() == "fn a() {\n}\n\nfn b() {\n}\n"


def test_statement_helpers():
  engine = EmissionEngine()
  engine.add_extern_crate("cbindgen")
  engine.add_dependency("std::env")
  with engine.push_context(FunctionContext("f")):
    engine.add_def_with_let("v", "g()", mutable=True, type_name="&[u8]", unchecked=True)
    engine.add_out_assignment("return_ptr", "v")
    engine.add_func_call("h(v)")
    engine.add_func_call("h(v)", binding="w")
  assert engine.lines[:2] == ["extern crate cbindgen;", "use std::env;"]
  assert "    let mut v: &[u8] = unsafe { g() };" in engine.lines
  assert "    unsafe { *return_ptr = v };" in engine.lines
  assert "    h(v);" in engine.lines
  assert "    let w = h(v);" in engine.lines


def test_flush_writes_file(tmp_path):
  engine = EmissionEngine()
  with engine.push_context(FunctionContext("main")):
    pass
  target = tmp_path / "nested" / "build.rs"
  engine.flush(target)
  assert target.read_text(encoding="utf-8") == "fn main() {\n}\n"


def test_flush_with_open_scope_fails(tmp_path):
  engine = EmissionEngine()
  engine.push_context(FunctionContext("main"))
  with pytest.raises(ValueError, match="open scopes"):
    engine.flush(tmp_path / "lib.rs")
  assert not (tmp_path / "lib.rs").exists()


def test_empty_engine_renders_nothing():
  assert EmissionEngine().to_source() == ""
