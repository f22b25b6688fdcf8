#!/usr/bin/env python3
"""
MiMo Assembler

Usage: python assemble.py <infile> [outfile=<infile>.ram] [-v] [--dump-labels]
                          [--format raw|bin] [--disassemble]

Assembly language syntax:
    # comment
    label: mnemonic [op1[, op2[, op3[, op4]]]]

Instructions (see mimo.INSTRUCTIONS for the full table):
    Arithmetic: add, sub, mul, div, rem, and, or, xor, nand, nor, not
    Shifts:     lsl, lsr, asr, rol, ror
    Immediate:  addi ... rori, addc, subc
    Jumps:      jeq ... jgez, jmp         (absolute target)
    Branches:   beq ... bgez, br          (relative target)
    Stack:      jsr, rts, push, pop       (SREG is always r7)
    Data:       li, lw, sw, lwi, swi, lwri, swri, move, clr, neg, inc, dec

Operands:
    r0-r7       Registers
    123 -5      Decimal immediate
    0x1f 0b101  Hex / binary immediate (16 bits, optional sign)
    label       Label reference

Output: Logisim "v2.0 raw" image, one hex word per line.
"""

import os
import re
import sys
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from lexer import COMMA, WORD, TokenStream
from mimo import (ABSOLUTE, INSTRUCTIONS, REGISTER_SHIFTS, REGISTERS, STACK_OPCODES,
                  STACK_POINTER, OPCODE_SHIFT, WORD_MASK, AssemblerError, ErrorKind,
                  InstructionSpec, MemoryImage, UsageParser, disassemble, format_labels,
                  read_image, write_image)

NUMBER_RE = re.compile(r'^(?P<sign>[+-])?(?:0(?P<radix>[xb]))?(?P<number>[0-9a-f]+)$')
RADIXES = {'x': 16, 'b': 2, None: 10}

ADDRESS_SPACE = 0x10000


@dataclass
class SourceLine:
    """A recognized source line."""
    label: Optional[str]
    mnemonic: Optional[str]  # None for a label with nothing after it
    operands: List[str] = field(default_factory=list)


@dataclass
class Program:
    """Result of assembling one source file."""
    words: List[int] = field(default_factory=list)
    labels: Dict[str, int] = field(default_factory=dict)
    listing: List[Tuple[int, int, str]] = field(default_factory=list)  # (addr, word, source)

    def image(self) -> MemoryImage:
        return MemoryImage(words=list(self.words), width=16)


def parse_line(line: str, line_num: int = 0) -> Optional[SourceLine]:
    """Recognize '[label:] mnemonic [operands]'. Returns None for non-instruction lines.

    Whatever follows the last well-formed operand is ignored, like a comment.
    """
    stream = TokenStream(line, line_num)
    label = stream.accept_label()

    token = stream.peek()
    if token is None or token.kind != WORD or not token.text[0].isalpha():
        if label is not None:
            return SourceLine(label, None)
        return None
    mnemonic = stream.next().text.lower()

    operands = []
    if stream.peek_kind() == WORD:
        operands.append(stream.next().text)
        while stream.peek_kind() == COMMA and stream.peek_kind(1) == WORD:
            stream.next()
            operands.append(stream.next().text)

    return SourceLine(label, mnemonic, operands)


class Assembler:
    """Two-pass MiMo assembler."""

    def __init__(self):
        self.labels: Dict[str, int] = {}
        self.words: List[int] = []
        self.listing: List[Tuple[int, int, str]] = []
        self.address = 0
        self.line_num = 0
        self.current_line = ""

    def error(self, message: str, kind: ErrorKind = ErrorKind.SYNTAX):
        """Raise an assembler error."""
        raise AssemblerError(message, self.line_num, self.current_line, kind)

    def recognize(self, source: str) -> Iterator[SourceLine]:
        """Yield recognized lines, tracking the current line for errors."""
        for i, line in enumerate(source.splitlines(), 1):
            self.line_num = i
            self.current_line = line
            source_line = parse_line(line, i)
            if source_line is not None:
                yield source_line

    def lookup(self, mnemonic: str) -> InstructionSpec:
        spec = INSTRUCTIONS.get(mnemonic.lower())
        if spec is None:
            self.error(f"Unknown instruction: {mnemonic}", ErrorKind.UNKNOWN_MNEMONIC)
        return spec

    def parse_register(self, token: str) -> int:
        """Parse register name, return register number."""
        reg = REGISTERS.get(token.lower())
        if reg is None:
            self.error(f"Invalid register: {token}", ErrorKind.BAD_REGISTER)
        return reg

    def parse_immediate(self, token: str) -> int:
        """Parse a signed 16-bit literal: [+-][0x|0b]digits."""
        head = token.lstrip('+-')[:1]
        if head.isalpha() or head == '_':
            self.error(f"Undefined label: {token}", ErrorKind.UNDEFINED_LABEL)

        m = NUMBER_RE.match(token.lower())
        if m is None:
            self.error(f"Invalid number: {token}", ErrorKind.BAD_NUMBER)

        try:
            magnitude = int(m.group('number'), RADIXES[m.group('radix')])
        except ValueError:
            self.error(f"Invalid number: {token}", ErrorKind.BAD_NUMBER)
        if magnitude > WORD_MASK:
            self.error(f"Number can't fit into 16 bits: {token}", ErrorKind.BAD_NUMBER)

        value = magnitude - 0x10000 if magnitude & 0x8000 else magnitude
        return -value if m.group('sign') == '-' else value

    def resolve_value(self, token: str) -> int:
        """Label address if token names a label, literal value otherwise."""
        if token in self.labels:
            return self.labels[token]
        return self.parse_immediate(token)

    def advance(self, size: int):
        self.address += size
        if self.address > ADDRESS_SPACE:
            self.error("Program does not fit into 64K words", ErrorKind.ADDRESS_RANGE)

    def resolve_labels(self, source: str):
        """Pass 1: bind every label to the address of its instruction."""
        self.address = 0
        seen = set()
        for line in self.recognize(source):
            if line.label is not None:
                if line.label in seen:
                    self.error(f"Label {line.label} is already defined!", ErrorKind.DUPLICATE_LABEL)
                seen.add(line.label)
            if line.mnemonic is None:
                continue
            if line.label is not None:
                self.labels[line.label] = self.address
            self.advance(self.lookup(line.mnemonic).size)

    def encode(self, line: SourceLine) -> List[int]:
        """Encode one instruction at the current address."""
        spec = self.lookup(line.mnemonic)
        instr = spec.opcode << OPCODE_SHIFT
        immed = None

        if len(line.operands) > len(spec.operands):
            self.error(f"Too many arguments for {spec.mnemonic}: expected {len(spec.operands)}",
                       ErrorKind.OPERAND_COUNT)
        elif len(line.operands) < len(spec.operands):
            self.error(f"Arguments missing for {spec.mnemonic}: expected {len(spec.operands)}",
                       ErrorKind.OPERAND_COUNT)

        for role, arg in zip(spec.operands, line.operands):
            if role in REGISTER_SHIFTS:
                instr |= self.parse_register(arg) << REGISTER_SHIFTS[role]
            elif role == ABSOLUTE:
                immed = self.resolve_value(arg)
            else:
                immed = self.resolve_value(arg) - self.address - 1

        # Stack pointer is r7 and lives in SREG
        if spec.opcode in STACK_OPCODES:
            instr |= STACK_POINTER << REGISTER_SHIFTS['s']

        if immed is None:
            return [instr]
        return [instr, immed & WORD_MASK]

    def assemble(self, source: str) -> Program:
        """Assemble source code into a program image."""
        self.labels = {}
        self.words = []
        self.listing = []

        self.resolve_labels(source)

        self.address = 0
        for line in self.recognize(source):
            if line.mnemonic is None:
                continue
            text = self.current_line.strip()
            for word in self.encode(line):
                self.words.append(word)
                self.listing.append((self.address, word, text))
                text = ""
                self.address += 1

        return Program(words=self.words, labels=dict(self.labels), listing=self.listing)


def assemble(source: str) -> Program:
    """Assemble source text with a fresh assembler."""
    return Assembler().assemble(source)


def format_listing(program: Program) -> List[str]:
    return [f"{addr:04x}: {word:04x} {word:016b}   {text}".rstrip()
            for addr, word, text in program.listing]


def main(argv=None):
    parser = UsageParser(description='MiMo Assembler')
    parser.add_argument('infile', help='Input assembly file (or image with --disassemble)')
    parser.add_argument('outfile', nargs='?', default=None, help='Output image file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Print the assembly listing')
    parser.add_argument('--dump-labels', action='store_true', help='Print label addresses after assembly')
    parser.add_argument('--format', choices=('raw', 'bin'), default='raw',
                        help='raw: Logisim text image, bin: compressed binary image')
    parser.add_argument('--disassemble', action='store_true', help='Disassemble an image instead')

    args = parser.parse_args(argv)

    if args.disassemble:
        try:
            image = read_image(args.infile)
        except OSError as e:
            print(f"Error: Can't read {args.infile}: {e.strerror}", file=sys.stderr)
            sys.exit(1)
        except ValueError as e:
            print(f"Error reading image: {e}", file=sys.stderr)
            sys.exit(1)
        print(disassemble(image))
        return

    # Read source file
    try:
        with open(args.infile, 'r') as f:
            source = f.read()
    except OSError as e:
        print(f"Error: Can't read {args.infile}: {e.strerror}", file=sys.stderr)
        sys.exit(1)

    # Assemble
    try:
        program = assemble(source)
    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose:
        for line in format_listing(program):
            print(line)

    if args.dump_labels:
        for line in format_labels(program.labels):
            print(line)

    if not args.outfile:
        suffix = '.ram' if args.format == 'raw' else '.bin'
        args.outfile = os.path.splitext(args.infile)[0] + suffix

    # Write output
    try:
        write_image(args.outfile, program.image(), binary=args.format == 'bin')
        print(f"Output written to {args.outfile}")
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
