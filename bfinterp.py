import io
import logging
import sys

from bftree import DEBUG, BracketMismatch, Command, Loop, parse

# Changing this trades memory use for cell range; the tape defaults to one
# cell per pointer value.
CELL_BITS = 8

EOF_LEAVE = "leave"
EOF_ZERO = "zero"
EOF_FAIL = "fail"
EOF_POLICIES = (EOF_LEAVE, EOF_ZERO, EOF_FAIL)

log = logging.getLogger(__name__)


class InputExhausted(EOFError):
    pass


def open_source(data_input):
    if isinstance(data_input, str):
        raise TypeError("data_input must be bytes or a binary file, not str")
    if data_input is None:
        return sys.stdin.buffer
    if isinstance(data_input, (bytes, bytearray, memoryview)):
        return io.BytesIO(data_input)
    return data_input


def check_config(cell_bits, tape_size, on_eof):
    """Validate run options and return the effective tape size."""
    if cell_bits <= 0:
        raise ValueError(f"cell_bits must be positive, got {cell_bits}")
    if tape_size is None:
        tape_size = 1 << cell_bits
    if tape_size <= 0:
        raise ValueError(f"tape_size must be positive, got {tape_size}")
    if on_eof not in EOF_POLICIES:
        raise ValueError(f"Unknown EOF policy {on_eof!r}")
    return tape_size


class ExecutionState(object):
    """
    Tape, pointer and stream handles for a single run
    """

    def __init__(
        self, source, sink, cell_bits=CELL_BITS, tape_size=None, on_eof=EOF_LEAVE
    ):
        self.tape_size = check_config(cell_bits, tape_size, on_eof)
        self.cell_bits = cell_bits
        self.cell_mask = (1 << cell_bits) - 1
        self.on_eof = on_eof
        self.source = source
        self.sink = sink
        self.mptr = 0

        if cell_bits == 8:
            self.memory = bytearray(self.tape_size)
        else:
            self.memory = [0] * self.tape_size

    @property
    def cell(self):
        return self.memory[self.mptr]

    def move(self, delta):
        self.mptr = (self.mptr + delta) % self.tape_size

    def add(self, delta):
        self.memory[self.mptr] = (self.memory[self.mptr] + delta) & self.cell_mask

    def write(self):
        self.sink.write(bytes((self.memory[self.mptr] & 0xFF,)))

    def read(self):
        ch = self.source.read(1)
        if not isinstance(ch, (bytes, bytearray)):
            raise TypeError(f"Input source must be binary, read {ch!r}")
        if ch:
            self.memory[self.mptr] = ch[0] & self.cell_mask
        elif self.on_eof == EOF_ZERO:
            self.memory[self.mptr] = 0
        elif self.on_eof == EOF_FAIL:
            raise InputExhausted(f"Input exhausted at cell {self.mptr}")


class Executor(object):
    """
    Walks a Program against an ExecutionState.

    Entering a Loop pushes the enclosing (sequence, position) frame; when the
    loop body runs out the controlling cell is tested again and the frame is
    popped once it reads zero.
    """

    def __init__(self, program, state):
        self.program = program
        self.state = state

    def run(self):
        state = self.state
        trace = log.isEnabledFor(logging.DEBUG)
        frames = []
        seq, pc = self.program.nodes, 0

        while True:
            if pc == len(seq):
                if not frames:
                    break
                if state.cell:
                    pc = 0
                else:
                    seq, pc = frames.pop()
                continue

            node = seq[pc]
            pc += 1

            if trace:
                log.debug("node=%s dataptr=%d cell=%d", node, state.mptr, state.cell)

            if isinstance(node, Loop):
                if state.cell:
                    frames.append((seq, pc))
                    seq, pc = node.body, 0
                continue

            op = node.command
            if op is Command.RIGHT:
                state.move(1)
            elif op is Command.LEFT:
                state.move(-1)
            elif op is Command.ADD:
                state.add(1)
            elif op is Command.SUB:
                state.add(-1)
            elif op is Command.OUT:
                state.write()
            elif op is Command.IN:
                state.read()

        return state


def evaluate(
    program,
    data_input=None,
    output=None,
    on_eof=EOF_LEAVE,
    cell_bits=CELL_BITS,
    tape_size=None,
):
    """
    Run ``program`` (a Program or source string).

    Input comes from ``data_input`` (bytes or a binary file, stdin when None).
    Output goes to the binary file ``output``; when it is None the output is
    buffered and returned as bytes.
    """
    if isinstance(program, str):
        program = parse(program)

    buffer_output = output is None
    sink = io.BytesIO() if buffer_output else output

    state = ExecutionState(
        open_source(data_input),
        sink,
        cell_bits=cell_bits,
        tape_size=tape_size,
        on_eof=on_eof,
    )
    Executor(program, state).run()

    return sink.getvalue() if buffer_output else None


class FlushingWriter(object):
    def __init__(self, stream):
        self.stream = stream

    def write(self, b):
        self.stream.write(b)
        self.stream.flush()


def main():
    logging.basicConfig(level=logging.DEBUG if DEBUG else logging.WARNING)

    if len(sys.argv) == 2:
        with open(sys.argv[1], "r") as f:
            try:
                program = parse(f.read())
            except BracketMismatch as e:
                print(e, file=sys.stderr)
                sys.exit(1)
        evaluate(program, output=FlushingWriter(sys.stdout.buffer))
    else:
        print("Usage:", sys.argv[0], "filename")


if __name__ == "__main__":
    main()
