import enum
import logging
import os

DEBUG = bool(os.environ.get("BFTREE_DEBUG"))

"""
Translations of native BF instructions -> program tree
+----+-------------+---------------------+
| BF |    Node     |          C          |
+----+-------------+---------------------+
| +  | Leaf(ADD)   | mem[p]++;           |
| -  | Leaf(SUB)   | mem[p]--;           |
| >  | Leaf(RIGHT) | p++;                |
| <  | Leaf(LEFT)  | p--;                |
| .  | Leaf(OUT)   | putchar(mem[p]);    |
| ,  | Leaf(IN)    | mem[p] = getchar(); |
| [  | Loop(...)   | while(mem[p]) {     |
| ]  |             | }                   |
+----+-------------+---------------------+
"""

log = logging.getLogger(__name__)


class Command(enum.Enum):
    LEFT = "<"
    RIGHT = ">"
    ADD = "+"
    SUB = "-"
    OUT = "."
    IN = ","
    OPEN = "["
    CLOSE = "]"

    @property
    def char(self):
        return self.value

    def is_bracket(self):
        return self is Command.OPEN or self is Command.CLOSE

    def __str__(self):
        return self.name.lower()


# Used to naively go from BF -> Command
instruction_command_map = {command.value: command for command in Command}


def instr_to_command(instr_char):
    return instruction_command_map[instr_char]


class BracketMismatch(RuntimeError):
    """
    Raised when the loop brackets of a program do not pair up
    """

    def __init__(self, message, position):
        super().__init__(f"{message} at position {position}")
        self.position = position


class UnexpectedClose(BracketMismatch):
    def __init__(self, position):
        super().__init__("Unmatched ']' found", position)


class UnclosedOpen(BracketMismatch):
    def __init__(self, position, depth=1):
        super().__init__("Unmatched '[' found", position)
        self.depth = depth


class Leaf(object):
    """
    A single non-loop command
    """

    __slots__ = ("command",)

    def __init__(self, command):
        if command.is_bracket():
            raise ValueError(f"{command!r} cannot be a leaf")
        self.command = command

    def __eq__(self, other):
        return isinstance(other, Leaf) and self.command is other.command

    def __hash__(self):
        return hash(self.command)

    def __str__(self):
        return self.command.char

    def __repr__(self):
        return f"Leaf({self.command})"


class Loop(object):
    """
    The body between one matched pair of brackets, brackets excluded
    """

    __slots__ = ("body",)

    def __init__(self, body=()):
        self.body = tuple(body)

    # Comparison goes through the rendered source so deep trees never recurse
    def __eq__(self, other):
        return isinstance(other, Loop) and str(self) == str(other)

    def __hash__(self):
        return hash(str(self))

    def __str__(self):
        return "[" + _render(self.body) + "]"

    def __repr__(self):
        return f"Loop({_render(self.body)!r})"


class Program(object):
    """
    Root of the program tree: the implicit top-level block
    """

    __slots__ = ("nodes",)

    def __init__(self, nodes=()):
        self.nodes = tuple(nodes)

    def __iter__(self):
        return iter(self.nodes)

    def __len__(self):
        return len(self.nodes)

    def __eq__(self, other):
        return isinstance(other, Program) and self.to_source() == other.to_source()

    def __hash__(self):
        return hash(self.to_source())

    def __repr__(self):
        return f"Program({self.to_source()!r})"

    def leaves(self):
        """Yield every leaf command in source order."""
        stack = [iter(self.nodes)]
        while stack:
            node = next(stack[-1], None)
            if node is None:
                stack.pop()
            elif isinstance(node, Loop):
                stack.append(iter(node.body))
            else:
                yield node.command

    def to_source(self):
        return _render(self.nodes)


def _render(nodes):
    out = []
    stack = [iter(nodes)]
    while stack:
        node = next(stack[-1], None)
        if node is None:
            stack.pop()
            if stack:
                out.append(Command.CLOSE.char)
        elif isinstance(node, Loop):
            out.append(Command.OPEN.char)
            stack.append(iter(node.body))
        else:
            out.append(node.command.char)
    return "".join(out)


def cleanup(source):
    return "".join(filter(lambda x: x in instruction_command_map, source))


def tokenize(source):
    """
    Map each command character to a Command; everything else is a comment
    """
    return [instr_to_command(char) for char in cleanup(source)]


def structure(commands, start=0):
    """
    Build the node list for ``commands`` in one pass.

    Each '[' saves the enclosing node list with its position and starts a new
    one; the matching ']' wraps the finished list in a Loop and appends it to
    the enclosing list. ``start`` is the absolute index of ``commands[0]`` and
    is only used for error positions.
    """
    nodes = []
    open_stack = []

    for idx, cmd in enumerate(commands):
        if cmd is Command.OPEN:
            open_stack.append((nodes, start + idx))
            nodes = []

        elif cmd is Command.CLOSE:
            if not open_stack:
                raise UnexpectedClose(start + idx)
            body = nodes
            nodes, _ = open_stack.pop()
            nodes.append(Loop(body))

        else:
            nodes.append(Leaf(cmd))

    if open_stack:
        raise UnclosedOpen(open_stack[0][1], len(open_stack))

    return nodes


def parse(source):
    commands = tokenize(source)
    program = Program(structure(commands))
    log.debug("parsed %d commands into %d top-level nodes", len(commands), len(program))
    return program
