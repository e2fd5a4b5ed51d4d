import io

import pytest

pytest.importorskip("llvmlite")

from bfinterp import EOF_FAIL, EOF_ZERO, InputExhausted, evaluate  # noqa: E402
from bfjit import Lowering, execute  # noqa: E402
from bftree import parse  # noqa: E402

HELLO_WORLD = (
    "++++++++[>++++[>++>+++>+++>+<<<<-]>+>+>->>+[<]<-]"
    ">>.>---.+++++++..+++.>>.<-.<.+++.------.--------.>>+.>++."
)


@pytest.mark.parametrize(
    "source, data_input",
    [
        ("+++.", b""),
        ("+++[-].", b""),
        (",.", bytes([65])),
        (",.,.", bytes([9])),
        ("-.", b""),
        ("<+.>.<.", b""),
        ("[.+++.]+.", b""),
        ("+++++[>++++++<-]>.", b""),
        (HELLO_WORLD, b""),
    ],
)
def test_matches_interpreter(source, data_input):
    assert execute(source, data_input=data_input) == evaluate(
        source, data_input=data_input
    )


def test_hello_world():
    assert execute(HELLO_WORLD) == b"Hello World!\n"


def test_eof_zero_policy():
    assert execute(",.,.", data_input=bytes([9]), on_eof=EOF_ZERO) == bytes([9, 0])


def test_eof_fail_policy_raises():
    sink = io.BytesIO()
    with pytest.raises(InputExhausted):
        execute(",.,.", data_input=bytes([9]), output=sink, on_eof=EOF_FAIL)
    assert sink.getvalue() == bytes([9])


def test_increment_wraps_full_cycle():
    assert execute("+" * 257 + ".") == bytes([1])


def test_pointer_wraps_with_decoupled_tape():
    source = "+" + ">" * 10 + "."
    assert execute(source, tape_size=10) == bytes([1])


def test_wide_cells():
    # 256 increments only wrap an 8-bit cell
    source = "+" * 256 + "[>+<[-]]>."
    assert execute(source, cell_bits=16) == bytes([1])
    assert execute(source) == bytes([0])


class _BrokenSink(object):
    def write(self, b):
        raise OSError("sink closed")


def test_write_failure_is_reraised():
    with pytest.raises(OSError, match="sink closed"):
        execute("+.+.", output=_BrokenSink())


def test_lowered_module_has_entry_function():
    module = Lowering().lower(parse("+[-]."))
    assert "bf_jit_exec" in str(module)


class _BrokenSource(object):
    def read(self, n):
        raise OSError("source closed")


def test_read_failure_is_reraised():
    sink = io.BytesIO()
    with pytest.raises(OSError, match="source closed"):
        execute("+++.,.", data_input=_BrokenSource(), output=sink)
    assert sink.getvalue() == bytes([3])


def test_text_mode_source_is_reraised():
    with pytest.raises(TypeError):
        execute(",.", data_input=io.StringIO("A"))


def test_verbose_prints_ir_and_assembly(capsys):
    assert execute("+.", verbose=True) == bytes([1])
    out = capsys.readouterr().out
    assert "LLVM IR" in out
    assert "bf_jit_exec" in out
    assert "Assembly" in out
