"""
Shared tables and image formats for the MiMo toolchain.

Instruction word layout (16 bits):
  15-9  OPCODE     Operation (0-74)
  8-6   TREG       Third register operand
  5-3   SREG       Second register operand (forced to r7 for stack ops)
  2-0   DREG       First register operand

  Instructions with an absolute or relative value are followed by one
  extra 16-bit immediate word.

Control word layout (23 significant bits, see CONTROL_FIELDS):
  0-3   aluop      4-5   op2sel     6     datawrite  7-8   addrsel
  9-10  pcsel      11    pcload     12    dwrite     13    irload
  14    imload     15-16 regsrc     17-18 cond       19    indexsel
  20-21 datasel    22    swrite

Decision word layout (16 bits):
  15-8  Next microaddress when the condition holds
  7-0   Next microaddress otherwise

Binary image container (zstd compressed):
  MAGIC (4) + VERSION (2) + WIDTH (1) + COUNT (4) + words (little-endian)
"""

from zstd import Error as ZstdError, compress, decompress
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple
import argparse
import struct
import sys

# Magic bytes for the binary image container
MAGIC = b'MIMO'
VERSION = 1

# Header line of the Logisim text image format
RAW_HEADER = 'v2.0 raw'

CONTROL_STORE_SIZE = 256
DISPATCH_SIZE = 128
DISPATCH_KEYWORD = 'opcode_jump'

WORD_MASK = 0xFFFF
OPCODE_SHIFT = 9


class ErrorKind(Enum):
    DUPLICATE_LABEL = 'duplicate label'
    UNKNOWN_MNEMONIC = 'unknown mnemonic'
    UNKNOWN_SIGNAL = 'unknown control signal'
    OPERAND_COUNT = 'operand count'
    BAD_REGISTER = 'bad register'
    BAD_NUMBER = 'bad number'
    UNDEFINED_LABEL = 'undefined label'
    SYNTAX = 'syntax'
    ADDRESS_RANGE = 'address out of range'


class AssemblerError(Exception):
    """Assembler error with line information."""
    def __init__(self, message: str, line_num: int = 0, line: str = "",
                 kind: ErrorKind = ErrorKind.SYNTAX):
        self.message = message
        self.line_num = line_num
        self.line = line
        self.kind = kind
        super().__init__(f"Line {line_num}: {message}\n  {line}")


# Register names
REGISTERS = MappingProxyType({f'r{i}': i for i in range(8)})

REG_NAMES = {v: k for k, v in REGISTERS.items()}

STACK_POINTER = 7

# Operand roles: register roles map to their bit shift
REGISTER_SHIFTS = MappingProxyType({'d': 0, 's': 3, 't': 6})
ABSOLUTE = 'i'
RELATIVE = 'I'


@dataclass(frozen=True)
class InstructionSpec:
    """One entry of the instruction table."""
    mnemonic: str
    opcode: int
    operands: str  # one role character per operand, in source order

    @property
    def has_immediate(self) -> bool:
        return ABSOLUTE in self.operands or RELATIVE in self.operands

    @property
    def size(self) -> int:
        """Return encoded size in words."""
        return 2 if self.has_immediate else 1


_INSTRUCTION_LIST = (
    # Register arithmetic / logic
    InstructionSpec('add', 0, 'dst'),
    InstructionSpec('sub', 1, 'dst'),
    InstructionSpec('mul', 2, 'dst'),
    InstructionSpec('div', 3, 'dst'),
    InstructionSpec('rem', 4, 'dst'),
    InstructionSpec('and', 5, 'dst'),
    InstructionSpec('or', 6, 'dst'),
    InstructionSpec('xor', 7, 'dst'),
    InstructionSpec('nand', 8, 'dst'),
    InstructionSpec('nor', 9, 'dst'),
    InstructionSpec('not', 10, 'ds'),
    InstructionSpec('lsl', 11, 'dst'),
    InstructionSpec('lsr', 12, 'dst'),
    InstructionSpec('asr', 13, 'dst'),
    InstructionSpec('rol', 14, 'dst'),
    InstructionSpec('ror', 15, 'dst'),
    # Immediate arithmetic / logic
    InstructionSpec('addi', 16, 'dsi'),
    InstructionSpec('subi', 17, 'dsi'),
    InstructionSpec('muli', 18, 'dsi'),
    InstructionSpec('divi', 19, 'dsi'),
    InstructionSpec('remi', 20, 'dsi'),
    InstructionSpec('andi', 21, 'dsi'),
    InstructionSpec('ori', 22, 'dsi'),
    InstructionSpec('xori', 23, 'dsi'),
    InstructionSpec('nandi', 24, 'dsi'),
    InstructionSpec('nori', 25, 'dsi'),
    InstructionSpec('lsli', 26, 'dsi'),
    InstructionSpec('lsri', 27, 'dsi'),
    InstructionSpec('asri', 28, 'dsi'),
    InstructionSpec('roli', 29, 'dsi'),
    InstructionSpec('rori', 30, 'dsi'),
    # Carry variants
    InstructionSpec('addc', 31, 'dsti'),
    InstructionSpec('subc', 32, 'dsti'),
    # Compare and jump (absolute)
    InstructionSpec('jeq', 33, 'sti'),
    InstructionSpec('jne', 34, 'sti'),
    InstructionSpec('jgt', 35, 'sti'),
    InstructionSpec('jle', 36, 'sti'),
    InstructionSpec('jlt', 37, 'sti'),
    InstructionSpec('jge', 38, 'sti'),
    InstructionSpec('jeqz', 39, 'si'),
    InstructionSpec('jnez', 40, 'si'),
    InstructionSpec('jgtz', 41, 'si'),
    InstructionSpec('jlez', 42, 'si'),
    InstructionSpec('jltz', 43, 'si'),
    InstructionSpec('jgez', 44, 'si'),
    InstructionSpec('jmp', 45, 'i'),
    # Compare and branch (relative)
    InstructionSpec('beq', 46, 'stI'),
    InstructionSpec('bne', 47, 'stI'),
    InstructionSpec('bgt', 48, 'stI'),
    InstructionSpec('ble', 49, 'stI'),
    InstructionSpec('blt', 50, 'stI'),
    InstructionSpec('bge', 51, 'stI'),
    InstructionSpec('beqz', 52, 'sI'),
    InstructionSpec('bnez', 53, 'sI'),
    InstructionSpec('bgtz', 54, 'sI'),
    InstructionSpec('blez', 55, 'sI'),
    InstructionSpec('bltz', 56, 'sI'),
    InstructionSpec('bgez', 57, 'sI'),
    InstructionSpec('br', 58, 'I'),
    # Subroutines
    InstructionSpec('jsr', 59, 'i'),
    InstructionSpec('rts', 60, ''),
    # Data movement
    InstructionSpec('inc', 61, 's'),
    InstructionSpec('dec', 62, 's'),
    InstructionSpec('li', 63, 'di'),
    InstructionSpec('lw', 64, 'di'),
    InstructionSpec('sw', 65, 'di'),
    InstructionSpec('lwi', 66, 'dsi'),
    InstructionSpec('swi', 67, 'dsi'),
    InstructionSpec('push', 68, 'd'),
    InstructionSpec('pop', 69, 'd'),
    InstructionSpec('move', 70, 'ds'),
    InstructionSpec('clr', 71, 's'),
    InstructionSpec('neg', 72, 's'),
    InstructionSpec('lwri', 73, 'dst'),
    InstructionSpec('swri', 74, 'dst'),
)

INSTRUCTIONS = MappingProxyType({spec.mnemonic: spec for spec in _INSTRUCTION_LIST})

OPCODE_NAMES = MappingProxyType({spec.opcode: spec for spec in _INSTRUCTION_LIST})

# jsr, rts, push and pop address memory through the stack pointer in SREG
STACK_OPCODES = frozenset(INSTRUCTIONS[m].opcode for m in ('jsr', 'rts', 'push', 'pop'))


@dataclass(frozen=True)
class ControlField:
    """A named bit range of the control word."""
    name: str
    offset: int
    width: int
    values: Tuple[str, ...]  # legal values, indexed by their encoding

    @property
    def mask(self) -> int:
        return ((1 << self.width) - 1) << self.offset

    def encode(self, value: str) -> Optional[int]:
        """Return the bits for value, or None if it is not legal here."""
        if value not in self.values:
            return None
        return self.values.index(value) << self.offset

    def decode(self, word: int) -> str:
        return self.values[(word & self.mask) >> self.offset]


_BINARY = ('0', '1')

CONTROL_FIELDS = MappingProxyType({f.name: f for f in (
    ControlField('aluop', 0, 4, ('add', 'sub', 'mul', 'div', 'rem', 'and', 'or', 'xor',
                                 'nand', 'nor', 'not', 'lsl', 'lsr', 'asr', 'rol', 'ror')),
    ControlField('op2sel', 4, 2, ('treg', 'immed', 'const0', 'const1')),
    ControlField('datawrite', 6, 1, _BINARY),
    ControlField('addrsel', 7, 2, ('pc', 'immed', 'aluout', 'sreg')),
    ControlField('pcsel', 9, 2, ('pc', 'immed', 'pcimmed', 'sreg')),
    ControlField('pcload', 11, 1, _BINARY),
    ControlField('dwrite', 12, 1, _BINARY),
    ControlField('irload', 13, 1, _BINARY),
    ControlField('imload', 14, 1, _BINARY),
    ControlField('regsrc', 15, 2, ('databus', 'immed', 'aluout', 'sreg')),
    ControlField('cond', 17, 2, ('c', 'corz', 'z', 'n')),
    ControlField('indexsel', 19, 1, ('0', 'opcode')),
    ControlField('datasel', 20, 2, ('pc', 'dreg', 'treg', 'aluout')),
    ControlField('swrite', 22, 1, _BINARY),
)})

CONDITIONS = CONTROL_FIELDS['cond'].values


def encode_signal(name: str, value: str) -> Optional[int]:
    """Return control word bits for name=value, or None if unknown."""
    control_field = CONTROL_FIELDS.get(name)
    if control_field is None:
        return None
    return control_field.encode(value)


def describe_control_word(word: int) -> str:
    """Human-readable name=value form of the non-zero fields of a control word."""
    parts = []
    for control_field in CONTROL_FIELDS.values():
        if word & control_field.mask:
            parts.append(f"{control_field.name}={control_field.decode(word)}")
    return " ".join(parts) if parts else "-"


def to_signed(word: int) -> int:
    word &= WORD_MASK
    return word - 0x10000 if word & 0x8000 else word


@dataclass
class MemoryImage:
    """An ordered array of words destined for one memory."""
    words: List[int] = field(default_factory=list)
    width: int = 16  # bits per word: 16 for RAM and decisions, 32 for control words

    def to_raw(self) -> str:
        """Encode to the Logisim "v2.0 raw" text format."""
        lines = [RAW_HEADER]
        lines.extend(f"{word:x}" for word in self.words)
        return '\n'.join(lines) + '\n'

    @classmethod
    def from_raw(cls, text: str, width: int = 16) -> 'MemoryImage':
        """Decode the Logisim text format, including N*value runs."""
        lines = [line.strip() for line in text.splitlines()]
        lines = [line for line in lines if line and not line.startswith('#')]
        if not lines or lines[0] != RAW_HEADER:
            raise ValueError(f"Missing '{RAW_HEADER}' header")

        image = cls(width=width)
        for line in lines[1:]:
            for token in line.split():
                if '*' in token:
                    count, value = token.split('*', 1)
                    image.words.extend([int(value, 16)] * int(count))
                else:
                    image.words.append(int(token, 16))
        return image

    def encode(self) -> bytes:
        """Encode image to compressed bytes."""
        fmt = 'H' if self.width <= 16 else 'I'
        mask = (1 << (16 if fmt == 'H' else 32)) - 1
        header = struct.pack('<4sHBI', MAGIC, VERSION, self.width, len(self.words))
        body = struct.pack(f'<{len(self.words)}{fmt}', *(w & mask for w in self.words))
        return compress(header + body, 22)

    @classmethod
    def decode(cls, data: bytes) -> 'MemoryImage':
        """Decode compressed bytes to an image."""
        try:
            data = decompress(data)
        except ZstdError as e:
            raise ValueError(f"Corrupt image: {e}") from e

        if len(data) < 11:
            raise ValueError("Data too short for image header")

        magic, version, width, count = struct.unpack('<4sHBI', data[:11])

        if magic != MAGIC:
            raise ValueError(f"Invalid magic bytes: {magic}")
        if version > VERSION:
            raise ValueError(f"Unsupported version: {version}")

        fmt = 'H' if width <= 16 else 'I'
        size = struct.calcsize(f'<{count}{fmt}')
        if len(data) < 11 + size:
            raise ValueError(f"Truncated image: expected {count} words")

        words = struct.unpack(f'<{count}{fmt}', data[11:11 + size])
        return cls(words=list(words), width=width)


def disassemble_word(words: List[int], addr: int) -> Tuple[str, int]:
    """Disassemble the instruction at addr. Returns (text, words consumed)."""
    word = words[addr]
    spec = OPCODE_NAMES.get(word >> OPCODE_SHIFT)
    if spec is None:
        return f".word 0x{word:04x}", 1

    if spec.has_immediate and addr + 1 >= len(words):
        return f".word 0x{word:04x}    ; truncated {spec.mnemonic}", 1

    operands = []
    comment = ""
    for role in spec.operands:
        if role in REGISTER_SHIFTS:
            operands.append(REG_NAMES[(word >> REGISTER_SHIFTS[role]) & 0x7])
        elif role == ABSOLUTE:
            operands.append(f"0x{words[addr + 1]:04x}")
        else:
            disp = to_signed(words[addr + 1])
            operands.append(str(disp))
            comment = f"    ; -> 0x{(addr + 1 + disp) & WORD_MASK:04x}"

    text = spec.mnemonic
    if operands:
        text += " " + ", ".join(operands)
    return text + comment, spec.size


def disassemble(image: MemoryImage) -> str:
    """Disassemble a macro-assembler image to human-readable format."""
    lines = [f"; {len(image.words)} words", ""]

    addr = 0
    while addr < len(image.words):
        text, size = disassemble_word(image.words, addr)
        raw = " ".join(f"{w:04x}" for w in image.words[addr:addr + size])
        lines.append(f"0x{addr:04X}: {raw:<9}  {text}")
        addr += size

    return '\n'.join(lines)


class UsageParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on bad usage."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        sys.exit(1)


def write_image(path: str, image: MemoryImage, binary: bool = False):
    """Write image to path as text, or as a compressed container."""
    if binary:
        with open(path, 'wb') as f:
            f.write(image.encode())
    else:
        with open(path, 'w') as f:
            f.write(image.to_raw())


def read_image(path: str, width: int = 16) -> MemoryImage:
    """Read an image written by write_image, detecting its format."""
    with open(path, 'rb') as f:
        data = f.read()
    if data.startswith(RAW_HEADER.encode()):
        return MemoryImage.from_raw(data.decode(), width)
    return MemoryImage.decode(data)


def format_labels(labels: Dict[str, int], digits: int = 4) -> List[str]:
    """Label table sorted by address, for --dump-labels."""
    return [f"{name}: 0x{addr:0{digits}X}"
            for name, addr in sorted(labels.items(), key=lambda kv: kv[1])]
