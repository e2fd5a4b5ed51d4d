import io
import logging
import sys

import llvmlite.binding as llvm
import llvmlite.ir as ir

from ctypes import CFUNCTYPE, c_int32

from bftree import DEBUG, BracketMismatch, Command, Loop, parse
from bfinterp import (
    CELL_BITS,
    EOF_FAIL,
    EOF_LEAVE,
    EOF_ZERO,
    FlushingWriter,
    InputExhausted,
    check_config,
    open_source,
)

int32 = ir.IntType(32)
int64 = ir.IntType(64)

# Status returned by the compiled function and the stream callbacks
STATUS_OK = 0
STATUS_ERROR = 1
READ_EOF = -1
READ_ERROR = -2

# putchar/getchar replacements handed to the compiled code
WRITE_FN = CFUNCTYPE(c_int32, c_int32)
READ_FN = CFUNCTYPE(c_int32)

log = logging.getLogger(__name__)


def _init_llvm():
    try:
        llvm.initialize()
    except RuntimeError:
        # recent llvmlite initializes the core itself and rejects this call
        pass
    llvm.initialize_native_target()
    llvm.initialize_native_asmprinter()


def _resize(irb, value, to_type, name):
    if value.type.width > to_type.width:
        return irb.trunc(value, to_type, name)
    if value.type.width < to_type.width:
        return irb.zext(value, to_type, name)
    return value


class Lowering(object):
    """
    Lowers a program tree into a single `bf_jit_exec` function.

    The function takes the write and read callbacks and returns STATUS_OK, or
    STATUS_ERROR as soon as a callback reports a failure.
    """

    def __init__(self, cell_bits=CELL_BITS, tape_size=None, on_eof=EOF_LEAVE):
        self.tape_size = check_config(cell_bits, tape_size, on_eof)
        self.on_eof = on_eof
        self.cell = ir.IntType(cell_bits)

        self.module = ir.Module(name="bftree")
        write_type = ir.FunctionType(int32, [int32]).as_pointer()
        read_type = ir.FunctionType(int32, []).as_pointer()
        function_type = ir.FunctionType(int32, [write_type, read_type])
        self.function = ir.Function(self.module, function_type, name="bf_jit_exec")
        self.write_fn, self.read_fn = self.function.args

        tape_type = ir.ArrayType(self.cell, self.tape_size)
        self.tape = ir.GlobalVariable(self.module, tape_type, name="tape")
        self.tape.linkage = "internal"
        self.tape.initializer = ir.Constant(tape_type, None)

        bb_entry = self.function.append_basic_block("entry")
        self.irb = ir.IRBuilder(bb_entry)
        # The data pointer starts at cell 0
        self.dataptr_addr = self.irb.alloca(int64, name="dataptr_addr")
        self.irb.store(int64(0), self.dataptr_addr)

    def element_addr(self):
        dataptr = self.irb.load(self.dataptr_addr, "dataptr")
        return self.irb.gep(
            self.tape, [int64(0), dataptr], inbounds=True, name="element_addr"
        )

    def move(self, delta):
        irb = self.irb
        dataptr = irb.load(self.dataptr_addr, "dataptr")
        # Moving left adds size - 1 so the unsigned remainder wraps at 0
        step = 1 if delta > 0 else self.tape_size - 1
        moved = irb.add(dataptr, int64(step), "moved_dataptr")
        wrapped = irb.urem(moved, int64(self.tape_size), "wrapped_dataptr")
        irb.store(wrapped, self.dataptr_addr)

    def adjust(self, delta):
        irb = self.irb
        element_addr = self.element_addr()
        element = irb.load(element_addr, "element")
        if delta > 0:
            element = irb.add(element, self.cell(1), "inc_element")
        else:
            element = irb.sub(element, self.cell(1), "dec_element")
        irb.store(element, element_addr)

    def bail_if(self, cond):
        with self.irb.if_then(cond, likely=False):
            self.irb.ret(int32(STATUS_ERROR))

    def output(self):
        irb = self.irb
        element = irb.load(self.element_addr(), "element")
        element_i32 = _resize(irb, element, int32, "element_i32")
        byte = irb.and_(element_i32, int32(0xFF), "byte")
        status = irb.call(self.write_fn, [byte], "write_status")
        self.bail_if(irb.icmp_signed("!=", status, int32(STATUS_OK), "write_failed"))

    def input(self):
        irb = self.irb
        user_input = irb.call(self.read_fn, [], "user_input")
        self.bail_if(irb.icmp_signed("==", user_input, int32(READ_ERROR), "read_failed"))

        is_eof = irb.icmp_signed("==", user_input, int32(READ_EOF), "is_eof")
        with irb.if_else(is_eof) as (then, otherwise):
            with then:
                if self.on_eof == EOF_ZERO:
                    irb.store(self.cell(0), self.element_addr())
            with otherwise:
                value = _resize(irb, user_input, self.cell, "user_input_cell")
                irb.store(value, self.element_addr())

    def open_loop(self):
        irb = self.irb
        cond_block = irb.append_basic_block("loop_cond")
        loop_body_block = irb.append_basic_block("loop_body")
        post_loop_block = irb.append_basic_block("post_loop")

        irb.branch(cond_block)
        irb.position_at_end(cond_block)
        element = irb.load(self.element_addr(), "element")
        cmp = irb.icmp_unsigned("!=", element, self.cell(0), "compare_zero")
        irb.cbranch(cmp, loop_body_block, post_loop_block)

        irb.position_at_end(loop_body_block)
        return cond_block, post_loop_block

    def close_loop(self, cond_block, post_loop_block):
        self.irb.branch(cond_block)
        self.irb.position_at_end(post_loop_block)

    def lower(self, program):
        left_stack = []
        nodes = iter(program.nodes)

        while True:
            node = next(nodes, None)
            if node is None:
                if not left_stack:
                    break
                nodes, cond_block, post_loop_block = left_stack.pop()
                self.close_loop(cond_block, post_loop_block)
                continue

            if isinstance(node, Loop):
                cond_block, post_loop_block = self.open_loop()
                left_stack.append((nodes, cond_block, post_loop_block))
                nodes = iter(node.body)
                continue

            op = node.command
            if op is Command.RIGHT:
                self.move(1)
            elif op is Command.LEFT:
                self.move(-1)
            elif op is Command.ADD:
                self.adjust(1)
            elif op is Command.SUB:
                self.adjust(-1)
            elif op is Command.OUT:
                self.output()
            elif op is Command.IN:
                self.input()

        # Complete our function, could return void but keeping with unixisms
        self.irb.ret(int32(STATUS_OK))
        return self.module


def execute(
    program,
    data_input=None,
    output=None,
    on_eof=EOF_LEAVE,
    cell_bits=CELL_BITS,
    tape_size=None,
    verbose=False,
):
    """
    Compile ``program`` with LLVM and run it.

    Streams and options behave as in ``bfinterp.evaluate``. Exceptions raised
    by the streams inside the compiled code are re-raised here. ``verbose``
    prints the generated IR and native assembly to stdout.
    """
    if isinstance(program, str):
        program = parse(program)

    module = Lowering(cell_bits, tape_size, on_eof).lower(program)
    if verbose:
        print("====== LLVM IR")
        print(module)

    _init_llvm()
    llvm_module = llvm.parse_assembly(str(module))
    llvm_module.verify()

    source = open_source(data_input)
    buffer_output = output is None
    sink = io.BytesIO() if buffer_output else output
    errors = []

    def do_write(byte):
        try:
            sink.write(bytes((byte,)))
        except Exception as e:
            errors.append(e)
            return STATUS_ERROR
        return STATUS_OK

    def do_read():
        try:
            ch = source.read(1)
            if not isinstance(ch, (bytes, bytearray)):
                raise TypeError(f"Input source must be binary, read {ch!r}")
            if not ch:
                if on_eof == EOF_FAIL:
                    raise InputExhausted("Input exhausted")
                return READ_EOF
            return ch[0]
        except Exception as e:
            errors.append(e)
            return READ_ERROR

    write_cb = WRITE_FN(do_write)
    read_cb = READ_FN(do_read)

    tm = llvm.Target.from_default_triple().create_target_machine()
    with llvm.create_mcjit_compiler(llvm_module, tm) as ee:
        ee.finalize_object()

        if verbose:
            print("============ Assembly")
            print(tm.emit_assembly(llvm_module))

        cfptr = ee.get_function_address("bf_jit_exec")
        cfunc = CFUNCTYPE(c_int32, WRITE_FN, READ_FN)(cfptr)
        status = cfunc(write_cb, read_cb)

    if status != STATUS_OK:
        raise errors[0]

    return sink.getvalue() if buffer_output else None


def main():
    logging.basicConfig(level=logging.DEBUG if DEBUG else logging.WARNING)

    if len(sys.argv) == 2:
        with open(sys.argv[1], "r") as f:
            try:
                program = parse(f.read())
            except BracketMismatch as e:
                print(e, file=sys.stderr)
                sys.exit(1)
        execute(program, output=FlushingWriter(sys.stdout.buffer), verbose=DEBUG)
    else:
        print("Usage:", sys.argv[0], "filename")


if __name__ == "__main__":
    main()
