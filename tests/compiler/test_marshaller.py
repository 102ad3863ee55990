"""
Tests for the Ownership-Transfer Marshaller.

Verifies:
1.  **Receivers**: Each self mode reconstructs, consumes or re-releases correctly.
2.  **Arguments**: Structs, references, sequences (with length companions) and enums.
3.  **Returns**: Native slot for primitives, out-pointers for everything else.
4.  **Fallible Protocol**: Ok/Err dispatch onto the 0/1 sentinel.
5.  **Validation**: Rejected descriptors raise and emit nothing.
"""

import pytest
from hypothesis import given, settings, strategies as st

from ffiber.compiler.descriptor import FunctionDescriptor, NamedParam, SelfParam
from ffiber.compiler.engine import EmissionEngine
from ffiber.compiler.marshaller import OwnershipMarshaller
from ffiber.compiler.statements import replay
from ffiber.enums import SelfMode
from ffiber.types import OPAQUE_POINTER, Enum, MutRef, Primitive, Sequence, SharedRef, new_struct


def render(descriptor: FunctionDescriptor) -> str:
  engine = EmissionEngine()
  OwnershipMarshaller().emit(descriptor, engine)
  return engine.to_source()


def body(descriptor: FunctionDescriptor):
  return [line.strip() for line in render(descriptor).splitlines()]


# --- Reference Scenarios ---


def test_mutable_borrow_setter(conn, usize):
  descriptor = FunctionDescriptor(
    "set_limit",
    owner=conn,
    self_mode=SelfMode.REF_MUT,
    args=[("limit", usize)],
  )
  assert render(descriptor) == (
    "#[no_mangle]\n"
    'pub extern "C" fn Conn_set_limit(self_: *mut ::std::os::raw::c_void, limit: usize) {\n'
    "    let mut self_ = unsafe { Box::from_raw(self_ as *mut Conn) };\n"
    "    self_.set_limit(limit);\n"
    "    let _ = Box::into_raw(self_);\n"
    "}\n"
  )


def test_fallible_sequence_return(conn):
  descriptor = FunctionDescriptor(
    "read_all",
    owner=conn,
    self_mode=SelfMode.REF,
    ret=Sequence(Primitive("u8")),
    fallible=True,
  )
  # return_ptr receives the base of an array of element handles
  assert render(descriptor) == (
    "#[no_mangle]\n"
    'pub extern "C" fn Conn_read_all(self_: *mut ::std::os::raw::c_void, '
    "return_ptr: *mut *mut *mut ::std::os::raw::c_void, return_len: *mut usize) -> u32 {\n"
    "    let self_ = unsafe { Box::from_raw(self_ as *mut Conn) };\n"
    "    let value = match self_.read_all() {\n"
    "        Ok(value) => value,\n"
    "        Err(_) => {\n"
    "            let _ = Box::into_raw(self_);\n"
    "            return 1;\n"
    "        }\n"
    "    };\n"
    "    let value: Box<[*mut ::std::os::raw::c_void]> = value.into_iter()"
    ".map(|elem| Box::into_raw(Box::new(elem)) as *mut ::std::os::raw::c_void).collect();\n"
    "    unsafe { *return_len = value.len() };\n"
    "    unsafe { *return_ptr = Box::into_raw(value) as *mut *mut ::std::os::raw::c_void };\n"
    "    let _ = Box::into_raw(self_);\n"
    "    0\n"
    "}\n"
  )


# --- Receivers ---


def test_by_value_receiver_is_consumed(conn):
  lines = body(FunctionDescriptor("close", owner=conn, self_mode=SelfMode.VALUE))
  assert "let self_ = unsafe { *Box::from_raw(self_ as *mut Conn) };" in lines
  assert "self_.close();" in lines
  assert not any("into_raw(self_)" in line for line in lines)


def test_by_value_mut_receiver_is_consumed(conn):
  lines = body(FunctionDescriptor("finish", owner=conn, self_mode=SelfMode.VALUE_MUT))
  assert "let mut self_ = unsafe { *Box::from_raw(self_ as *mut Conn) };" in lines
  assert not any("into_raw(self_)" in line for line in lines)


def test_shared_receiver_is_released(conn):
  lines = body(FunctionDescriptor("peek", owner=conn, self_mode=SelfMode.REF))
  assert lines[2] == "let self_ = unsafe { Box::from_raw(self_ as *mut Conn) };"
  assert lines[3] == "self_.peek();"
  assert lines[4] == "let _ = Box::into_raw(self_);"


def test_associated_function_on_generic_owner(conn):
  pkt = new_struct("ReceivedPkt", conn)
  descriptor = FunctionDescriptor("new", owner=pkt, ret=pkt)
  lines = body(descriptor)
  assert lines[1] == (
    f'pub extern "C" fn ReceivedPkt_new(return_ptr: *mut {OPAQUE_POINTER}) {{'
  )
  assert "let value = ReceivedPkt::<Conn>::new();" in lines
  assert f"unsafe {{ *return_ptr = Box::into_raw(Box::new(value)) as {OPAQUE_POINTER} }};" in lines


# --- Arguments ---


def test_sequence_argument_gets_length_companion(conn):
  descriptor = FunctionDescriptor(
    "send",
    owner=conn,
    self_mode=SelfMode.REF_MUT,
    args=[("buf", Sequence(Primitive("u8"))), ("flags", Primitive("u32"))],
  )
  params = OwnershipMarshaller().materialize_params(descriptor)
  assert [p.name for p in params if isinstance(p, NamedParam)] == ["buf", "buf_len", "flags"]
  assert isinstance(params[0], SelfParam)
  assert params[2].is_length_companion

  lines = body(descriptor)
  assert "let buf: &[u8] = unsafe { std::slice::from_raw_parts(buf, buf_len) };" in lines
  assert "self_.send(buf, flags);" in lines
  assert lines[1].startswith('pub extern "C" fn Conn_send(self_: *mut ::std::os::raw::c_void, buf: *const u8, buf_len: usize, flags: u32)')


def test_struct_argument_is_consumed(conn):
  pkt = new_struct("Pkt")
  lines = body(FunctionDescriptor("push", owner=conn, self_mode=SelfMode.REF_MUT, args=[("pkt", pkt)]))
  assert "let pkt = unsafe { *Box::from_raw(pkt as *mut Pkt) };" in lines
  assert "self_.push(pkt);" in lines
  assert "let _ = Box::into_raw(pkt);" not in lines


def test_reference_arguments_are_borrowed_and_released(conn):
  buf = new_struct("Buf")
  descriptor = FunctionDescriptor(
    "copy_into",
    owner=conn,
    self_mode=SelfMode.REF,
    args=[("src", SharedRef(buf)), ("dst", MutRef(buf))],
  )
  lines = body(descriptor)
  assert "let src = unsafe { Box::from_raw(src as *mut Buf) };" in lines
  assert "let mut dst = unsafe { Box::from_raw(dst as *mut Buf) };" in lines
  assert "self_.copy_into(&*src, &mut *dst);" in lines
  releases = [line for line in lines if line.startswith("let _ = Box::into_raw(")]
  assert releases == [
    "let _ = Box::into_raw(self_);",
    "let _ = Box::into_raw(src);",
    "let _ = Box::into_raw(dst);",
  ]


def test_enum_argument_decodes_ordinal(conn):
  mode = Enum("Mode", ("Fast", "Slow"))
  source = render(FunctionDescriptor("set_mode", owner=conn, self_mode=SelfMode.REF_MUT, args=[("mode", mode)]))
  assert "mode: usize" in source
  assert (
    "    let mode = match mode {\n"
    "        0 => Mode::Fast,\n"
    "        1 => Mode::Slow,\n"
    "        _ => std::process::abort(),\n"
    "    };\n"
  ) in source


@given(count=st.integers(min_value=1, max_value=12))
@settings(max_examples=12)
def test_enum_decode_has_one_arm_per_variant_plus_default(count):
  variants = tuple(f"V{i}" for i in range(count))
  descriptor = FunctionDescriptor("pick", args=[("choice", Enum("Choice", variants))])
  lines = body(descriptor)
  arms = [line for line in lines if " => " in line]
  assert len(arms) == count + 1
  assert arms[-1] == "_ => std::process::abort(),"
  for i, variant in enumerate(variants):
    assert arms[i] == f"{i} => Choice::{variant},"


# --- Returns ---


def test_primitive_return_uses_native_slot(conn, usize):
  lines = body(FunctionDescriptor("len", owner=conn, self_mode=SelfMode.REF, ret=usize))
  assert lines[1].endswith(") -> usize {")
  assert "return_ptr" not in lines[1]
  assert lines[-3:] == ["let _ = Box::into_raw(self_);", "value", "}"]


def test_fallible_primitive_return_uses_out_pointer(conn, usize):
  lines = body(FunctionDescriptor("poll", owner=conn, self_mode=SelfMode.REF_MUT, ret=usize, fallible=True))
  assert "return_ptr: *mut usize" in lines[1]
  assert lines[1].endswith(") -> u32 {")
  assert "unsafe { *return_ptr = value };" in lines
  assert lines[-2:] == ["0", "}"]


def test_reference_returns_are_cast_not_boxed(conn):
  buf = new_struct("Buf")
  shared = body(FunctionDescriptor("buffer", owner=conn, self_mode=SelfMode.REF, ret=SharedRef(buf)))
  unique = body(FunctionDescriptor("buffer_mut", owner=conn, self_mode=SelfMode.REF_MUT, ret=MutRef(buf)))
  assert f"unsafe {{ *return_ptr = value as *const Buf as {OPAQUE_POINTER} }};" in shared
  assert f"unsafe {{ *return_ptr = value as *mut Buf as {OPAQUE_POINTER} }};" in unique


def test_fallible_without_value(conn):
  source = render(FunctionDescriptor("flush", owner=conn, self_mode=SelfMode.REF_MUT, fallible=True))
  assert (
    "    match self_.flush() {\n"
    "        Ok(_) => {},\n"
    "        Err(_) => {\n"
    "            let _ = Box::into_raw(self_);\n"
    "            return 1;\n"
    "        }\n"
    "    }\n"
    "    let _ = Box::into_raw(self_);\n"
    "    0\n"
  ) in source


def test_failure_arm_never_writes_out_pointers(conn):
  lines = body(
    FunctionDescriptor("next", owner=conn, self_mode=SelfMode.REF_MUT, ret=new_struct("Pkt"), fallible=True)
  )
  err = lines.index("Err(_) => {")
  end = lines.index("};")
  assert not any("return_ptr" in line for line in lines[err:end])


def test_free_function(usize):
  descriptor = FunctionDescriptor("checksum", args=[("data", Sequence(Primitive("u8")))], ret=usize)
  lines = body(descriptor)
  assert lines[1] == 'pub extern "C" fn checksum(data: *const u8, data_len: usize) -> usize {'
  assert "let value = checksum(data);" in lines


def test_extern_name_override(conn):
  descriptor = FunctionDescriptor("reset", owner=conn, self_mode=SelfMode.REF_MUT, extern_name="conn_reset_v2")
  assert descriptor.symbol == "conn_reset_v2"
  assert 'pub extern "C" fn conn_reset_v2(' in render(descriptor)


def test_destructor(conn):
  engine = EmissionEngine()
  replay(OwnershipMarshaller().compile_destructor(new_struct("ReceivedPkt", conn)), engine)
  assert engine.to_source() == (
    "#[no_mangle]\n"
    'pub extern "C" fn ReceivedPkt_free(self_: *mut ::std::os::raw::c_void) {\n'
    "    let self_ = unsafe { Box::from_raw(self_ as *mut ReceivedPkt<Conn>) };\n"
    "    drop(self_);\n"
    "}\n"
  )


# --- Validation ---


@pytest.mark.parametrize(
  "descriptor, message",
  [
    (FunctionDescriptor("f", args=[("self_", Primitive("u8"))]), "reserved"),
    (FunctionDescriptor("f", args=[("value", Primitive("u8"))]), "reserved"),
    (FunctionDescriptor("f", args=[("a", Primitive("u8")), ("a", Primitive("u8"))]), "Duplicate"),
    (
      FunctionDescriptor("f", args=[("buf", Sequence(Primitive("u8"))), ("buf_len", Primitive("usize"))]),
      "Duplicate|collides",
    ),
    (FunctionDescriptor("f", ret=Sequence(Primitive("u8"))), "fallible"),
    (FunctionDescriptor("f", ret=Enum("Mode", ("A",)), fallible=True), "cannot be returned"),
    (FunctionDescriptor("f", self_mode=SelfMode.REF), "no owner"),
    (FunctionDescriptor("f", args=[("xs", Sequence(new_struct("Pkt")))]), "primitives"),
    (FunctionDescriptor("f", args=[("x", SharedRef(Primitive("u8")))]), "references to structs"),
    (FunctionDescriptor("f", args=[("m", Enum("Mode", ()))]), "no variants"),
    (FunctionDescriptor("bad-name"), "Invalid function name"),
    (FunctionDescriptor("f", extern_name="1f"), "Invalid exported symbol"),
    (FunctionDescriptor("f", args=[("x", new_struct("Self"))]), "Self"),
    (FunctionDescriptor("f", owner=Primitive("u8")), "must be a Struct"),
    (FunctionDescriptor("f", args=[("type", Primitive("u8"))]), "Rust keyword"),
    (FunctionDescriptor("match"), "Rust keyword"),
    (FunctionDescriptor("f", extern_name="fn"), "Rust keyword"),
    (FunctionDescriptor("f", args=[("_", Primitive("u8"))]), "Rust keyword"),
    (FunctionDescriptor("f", args=[("x", new_struct("Foo Bar"))]), "Invalid struct name"),
    (FunctionDescriptor("f", args=[("x", SharedRef(new_struct("Pkt", new_struct("a-b"))))]), "Invalid struct name"),
    (FunctionDescriptor("f", args=[("m", Enum("Mode", ("A B",)))]), "Invalid enum variant"),
    (FunctionDescriptor("f", args=[("m", Enum("Mode", ("Fast", "mod")))]), "Rust keyword"),
    (FunctionDescriptor("f", owner=new_struct("bad name"), self_mode=SelfMode.REF), "Invalid struct name"),
    (FunctionDescriptor("f", ret=new_struct("net::type")), "Rust keyword"),
  ],
)
def test_rejected_descriptors(descriptor, message):
  with pytest.raises(ValueError, match=message):
    OwnershipMarshaller().compile(descriptor)


def test_path_qualifiers_accepted():
  owner = new_struct("crate::net::Conn")
  lines = body(FunctionDescriptor("reset", owner=owner, self_mode=SelfMode.REF_MUT))
  assert "let mut self_ = unsafe { Box::from_raw(self_ as *mut crate::net::Conn) };" in lines


def test_destructor_owner_name_checked():
  with pytest.raises(ValueError, match="Invalid struct name"):
    OwnershipMarshaller().compile_destructor(new_struct("Foo Bar"))


def test_rejected_descriptor_emits_nothing(conn):
  engine = EmissionEngine()
  with pytest.raises(ValueError):
    OwnershipMarshaller().emit(FunctionDescriptor("f", owner=conn, ret=Sequence(Primitive("u8"))), engine)
  assert engine.lines == []
  assert engine.current_context is None


def test_nested_sequence_argument_rejected():
  with pytest.raises(ValueError, match="Sequence of sequences"):
    OwnershipMarshaller().compile(FunctionDescriptor("f", args=[("xs", Sequence(Sequence(Primitive("u8"))))]))
