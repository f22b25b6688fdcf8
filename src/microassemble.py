#!/usr/bin/env python3
"""
MiMo Micro-assembler

Usage: python microassemble.py <infile> [-d outdir] [-v] [--decode] [--dump-labels]
                               [--format raw|bin]

Microcode syntax:
    # comment
    [label:] [signal=value ...][, jump]
    [N:]     [signal=value ...][, jump]     N = opcode slot in the dispatch block

Jumps:
    goto label                     unconditional
    if n|z|c|corz then a [else b]  conditional, b defaults to the next microaddress
    opcode_jump                    dispatch on the instruction opcode; reserves
                                   the next 128 microaddresses for N: handlers

    Without a jump the microinstruction falls through to the next microaddress.

Output: ucontrol.rom (control words) and udecision.rom (next-address pairs),
256 entries each, written next to the source file.
"""

import os
import sys
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union

from lexer import COMMA, EQUALS, OTHER, WORD, TokenStream
from mimo import (CONDITIONS, CONTROL_FIELDS, CONTROL_STORE_SIZE, DISPATCH_KEYWORD,
                  DISPATCH_SIZE, AssemblerError, ErrorKind, MemoryImage, UsageParser,
                  describe_control_word, encode_signal, format_labels, write_image)

CONTROL_FILE = 'ucontrol'
DECISION_FILE = 'udecision'


@dataclass(frozen=True)
class Goto:
    target: str


@dataclass(frozen=True)
class Branch:
    cond: str
    target: str
    otherwise: Optional[str] = None


@dataclass(frozen=True)
class Dispatch:
    pass


Jump = Union[Goto, Branch, Dispatch]


@dataclass
class MicroLine:
    """A recognized microcode line."""
    label: Optional[str]
    signals: List[Tuple[str, str]] = field(default_factory=list)
    jump: Optional[Jump] = None
    text: str = ""  # payload as written, for the listing

    @property
    def is_empty(self) -> bool:
        """A label with no microinstruction after it."""
        return not self.signals and self.jump is None

    @property
    def explicit_address(self) -> Optional[int]:
        """Literal numeric label, placed relative to the dispatch block."""
        if self.label is not None and self.label.isdecimal():
            return int(self.label)
        return None


def parse_jump(stream: TokenStream) -> Jump:
    """jump := 'goto' IDENT | 'if' COND 'then' IDENT ['else' IDENT] | 'opcode_jump'"""
    keyword = stream.expect(WORD, "jump").text.lower()
    if keyword == DISPATCH_KEYWORD:
        return Dispatch()
    if keyword == 'goto':
        return Goto(stream.expect(WORD, "goto target").text)
    if keyword == 'if':
        cond = stream.expect(WORD, "condition").text.lower()
        if cond not in CONDITIONS:
            stream.error(f"Unknown condition '{cond}', expected one of {', '.join(CONDITIONS)}")
        if stream.expect(WORD, "'then'").text.lower() != 'then':
            stream.error("Expected 'then'")
        target = stream.expect(WORD, "branch target").text
        otherwise = None
        if stream.peek_kind() == WORD and stream.peek().text.lower() == 'else':
            stream.next()
            otherwise = stream.expect(WORD, "else target").text
        return Branch(cond, target, otherwise)
    stream.error(f"Can't decode jump instruction: {keyword}")


def parse_microop(line: str, line_num: int = 0) -> Optional[MicroLine]:
    """Recognize one microcode line.

    Returns None when the line holds neither a label nor a microinstruction,
    and an empty MicroLine for a label standing alone. Text that cannot
    start a clause ends the line and is ignored.
    """
    stream = TokenStream(line, line_num)
    label = stream.accept_label()
    if stream.peek_kind() in (None, OTHER):
        return MicroLine(label) if label is not None else None

    micro = MicroLine(label)
    start = stream.peek().column
    while True:
        if stream.peek_kind(1) == EQUALS:
            # one or more name=value pairs
            while stream.peek_kind(1) == EQUALS:
                name = stream.expect(WORD, "signal name").text.lower()
                stream.expect(EQUALS, "'='")
                value = stream.expect(WORD, "signal value").text.lower()
                micro.signals.append((name, value))
            if stream.peek_kind() == WORD:
                stream.error(f"Expected ',' before '{stream.peek().text}'")
        else:
            micro.jump = parse_jump(stream)
            if stream.peek_kind() not in (None, OTHER):
                stream.error(f"Unexpected '{stream.peek().text}' after jump")
            break

        if stream.peek_kind() == COMMA and stream.peek_kind(1) == WORD:
            stream.next()
        else:
            break

    rest = stream.peek()
    end = rest.column if rest is not None else len(line)
    micro.text = line[start:end].split('#', 1)[0].strip()
    return micro


@dataclass
class Microcode:
    """Result of assembling one microcode file."""
    control: List[int]
    decision: List[int]
    labels: Dict[str, int] = field(default_factory=dict)
    listing: Dict[int, str] = field(default_factory=dict)  # microaddress -> source
    dispatch_base: Optional[int] = None

    def control_image(self) -> MemoryImage:
        return MemoryImage(words=list(self.control), width=32)

    def decision_image(self) -> MemoryImage:
        return MemoryImage(words=list(self.decision), width=16)


class MicroAssembler:
    """Two-pass MiMo micro-assembler."""

    def __init__(self):
        self.labels: Dict[str, int] = {}
        self.control: List[int] = [0] * CONTROL_STORE_SIZE
        self.decision: List[int] = [0] * CONTROL_STORE_SIZE
        self.listing: Dict[int, str] = {}
        self.next_addr = 0
        self.offset = 0
        self.dispatch_base: Optional[int] = None
        self.line_num = 0
        self.current_line = ""

    def error(self, message: str, kind: ErrorKind = ErrorKind.SYNTAX):
        """Raise an assembler error."""
        raise AssemblerError(message, self.line_num, self.current_line, kind)

    def recognize(self, source: str) -> Iterator[MicroLine]:
        for i, line in enumerate(source.splitlines(), 1):
            self.line_num = i
            self.current_line = line
            micro = parse_microop(line, i)
            if micro is not None:
                yield micro

    def check_address(self, addr: int, what: str) -> int:
        if not 0 <= addr < CONTROL_STORE_SIZE:
            self.error(f"{what} 0x{addr:x} is outside the control store", ErrorKind.ADDRESS_RANGE)
        return addr

    def place(self, micro: MicroLine) -> int:
        """Return the microaddress of a line and advance the counter."""
        explicit = micro.explicit_address
        if explicit is not None:
            return self.check_address(self.offset + explicit, "Microaddress")
        addr = self.check_address(self.next_addr, "Microaddress")
        self.next_addr += 1
        return addr

    def reserve_dispatch(self):
        """Start a dispatch block at next_addr and skip over it."""
        self.offset = self.next_addr
        if self.dispatch_base is None:
            self.dispatch_base = self.offset
        self.next_addr = self.offset + DISPATCH_SIZE

    def resolve(self, label: str) -> int:
        if label not in self.labels:
            self.error(f"Label {label} is not defined!", ErrorKind.UNDEFINED_LABEL)
        return self.labels[label]

    def pair(self, taken: int, not_taken: int) -> int:
        self.check_address(taken, "Jump target")
        self.check_address(not_taken, "Fall-through address")
        return (taken << 8) | not_taken

    def resolve_labels(self, source: str):
        """Pass 1: bind symbolic labels and lay out the dispatch blocks."""
        self.next_addr = 0
        self.offset = 0
        self.dispatch_base = None
        seen = set()
        for micro in self.recognize(source):
            if micro.label is not None and micro.explicit_address is None:
                if micro.label in seen:
                    self.error(f"Label {micro.label} is already defined!", ErrorKind.DUPLICATE_LABEL)
                seen.add(micro.label)
                if not micro.is_empty:
                    self.labels[micro.label] = self.next_addr
            if micro.is_empty:
                continue
            self.place(micro)
            if isinstance(micro.jump, Dispatch):
                self.reserve_dispatch()

    def encode_signals(self, micro: MicroLine) -> int:
        instr = 0
        for name, value in micro.signals:
            bits = encode_signal(name, value)
            if bits is None:
                if name not in CONTROL_FIELDS:
                    self.error(f"Unknown control signal: {name}", ErrorKind.UNKNOWN_SIGNAL)
                self.error(f"Wrong value for {name}: {value}", ErrorKind.UNKNOWN_SIGNAL)
            instr |= bits
        return instr

    def generate(self, micro: MicroLine):
        """Pass 2: encode one microinstruction into both tables."""
        addr = self.place(micro)
        instr = self.encode_signals(micro)
        jump = micro.jump

        if isinstance(jump, Dispatch):
            instr |= encode_signal('indexsel', 'opcode')
            jmp = self.pair(self.next_addr, self.next_addr)
            self.reserve_dispatch()
        elif isinstance(jump, Goto):
            target = self.resolve(jump.target)
            jmp = self.pair(target, target)
        elif isinstance(jump, Branch):
            instr |= encode_signal('cond', jump.cond)
            taken = self.resolve(jump.target)
            if jump.otherwise is not None:
                not_taken = self.resolve(jump.otherwise)
            else:
                not_taken = self.next_addr
            jmp = self.pair(taken, not_taken)
        else:
            # jump to next
            jmp = self.pair(self.next_addr, self.next_addr)

        # a later line placed at the same address overwrites this one
        self.control[addr] = instr
        self.decision[addr] = jmp
        label = f"{micro.label}: " if micro.label is not None else ""
        self.listing[addr] = label + micro.text

    def assemble(self, source: str) -> Microcode:
        """Assemble microcode into the control store and decision table."""
        self.labels = {}
        self.control = [0] * CONTROL_STORE_SIZE
        self.decision = [0] * CONTROL_STORE_SIZE
        self.listing = {}

        self.resolve_labels(source)
        dispatch_base = self.dispatch_base

        self.next_addr = 0
        self.offset = 0
        for micro in self.recognize(source):
            if not micro.is_empty:
                self.generate(micro)

        return Microcode(control=self.control, decision=self.decision,
                         labels=dict(self.labels), listing=dict(self.listing),
                         dispatch_base=dispatch_base)


def assemble(source: str) -> Microcode:
    """Assemble microcode text with a fresh micro-assembler."""
    return MicroAssembler().assemble(source)


def format_listing(microcode: Microcode, describe: bool = False) -> List[str]:
    lines = []
    for addr in range(CONTROL_STORE_SIZE):
        instr = microcode.control[addr]
        if instr == 0:
            continue
        text = describe_control_word(instr) if describe else microcode.listing.get(addr, "")
        lines.append(f"{addr:02x}: {instr:08x} {microcode.decision[addr]:04x}       # {text}")
    return lines


def main(argv=None):
    parser = UsageParser(description='MiMo Micro-assembler')
    parser.add_argument('infile', help='Input microcode file')
    parser.add_argument('--outdir', '-d', default=None,
                        help='Directory for the ROM images (default: next to infile)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Print the microcode listing')
    parser.add_argument('--decode', action='store_true',
                        help='List decoded control fields instead of source text')
    parser.add_argument('--dump-labels', action='store_true', help='Print microaddresses of labels')
    parser.add_argument('--format', choices=('raw', 'bin'), default='raw',
                        help='raw: Logisim text images, bin: compressed binary images')

    args = parser.parse_args(argv)

    # Read source file
    try:
        with open(args.infile, 'r') as f:
            source = f.read()
    except OSError as e:
        print(f"Error: Can't read {args.infile}: {e.strerror}", file=sys.stderr)
        sys.exit(1)

    # Assemble
    try:
        microcode = assemble(source)
    except AssemblerError as e:
        print(f"Micro-assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose or args.decode:
        for line in format_listing(microcode, describe=args.decode):
            print(line)

    if args.dump_labels:
        for line in format_labels(microcode.labels, digits=2):
            print(line)
        if microcode.dispatch_base is not None:
            print(f"{DISPATCH_KEYWORD}: 0x{microcode.dispatch_base:02X}")

    outdir = args.outdir or os.path.dirname(os.path.abspath(args.infile))
    suffix = '.rom' if args.format == 'raw' else '.bin'
    binary = args.format == 'bin'

    # Write output
    try:
        for name, image in ((CONTROL_FILE, microcode.control_image()),
                            (DECISION_FILE, microcode.decision_image())):
            path = os.path.join(outdir, name + suffix)
            write_image(path, image, binary=binary)
            print(f"Output written to {path}")
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
