#!/usr/bin/env python3
"""
test_assemble.py  -  Unit tests for the MiMo macro-assembler
Run:  python3 -m unittest discover tests
"""

import sys, os, unittest
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from assemble import Assembler, assemble, format_listing, main, parse_line
from mimo import INSTRUCTIONS, AssemblerError, ErrorKind, MemoryImage, disassemble
import contextlib, io, tempfile, textwrap


def words(src):
    """Assemble a source string, return the word list."""
    return assemble(textwrap.dedent(src)).words


class AsmErrorCase(unittest.TestCase):

    def assertAsmError(self, src, kind):
        with self.assertRaises(AssemblerError) as cm:
            assemble(textwrap.dedent(src))
        self.assertEqual(cm.exception.kind, kind)
        return cm.exception


# ─────────────────────────────────────────────────────────────────────────────
class TestParseLine(unittest.TestCase):

    def test_full(self):
        line = parse_line('loop: addi r1, r2, -3  # decrement')
        self.assertEqual(line.label, 'loop')
        self.assertEqual(line.mnemonic, 'addi')
        self.assertEqual(line.operands, ['r1', 'r2', '-3'])

    def test_no_operands(self):
        line = parse_line('  rts')
        self.assertIsNone(line.label)
        self.assertEqual(line.operands, [])

    def test_mnemonic_lowercased(self):
        self.assertEqual(parse_line('MOVE r1, r2').mnemonic, 'move')

    def test_blank_and_comment(self):
        self.assertIsNone(parse_line(''))
        self.assertIsNone(parse_line('    # just a comment'))

    def test_label_alone(self):
        line = parse_line('lonely:   # nothing follows')
        self.assertEqual(line.label, 'lonely')
        self.assertIsNone(line.mnemonic)

    def test_no_mnemonic(self):
        self.assertIsNone(parse_line('123'))
        line = parse_line('label: 123')
        self.assertEqual(line.label, 'label')
        self.assertIsNone(line.mnemonic)

    def test_foreign_comments(self):
        self.assertIsNone(parse_line('; header'))
        self.assertIsNone(parse_line('.org 5'))
        self.assertIsNone(parse_line('// -----'))

    def test_trailing_text_ignored(self):
        self.assertEqual(parse_line('add r1, r2, r3 ; note').operands, ['r1', 'r2', 'r3'])
        self.assertEqual(parse_line('add r1 r2').operands, ['r1'])

    def test_dangling_comma(self):
        self.assertEqual(parse_line('add r1, r2,').operands, ['r1', 'r2'])


# ─────────────────────────────────────────────────────────────────────────────
class TestEncoding(unittest.TestCase):

    def test_add_registers(self):
        # opcode 0, d=1 (bits 0-2), s=2 (0x10), t=3 (0xC0)
        self.assertEqual(words('add r1, r2, r3'), [0x00D1])

    def test_uppercase(self):
        self.assertEqual(words('ADD R1, R2, R3'), [0x00D1])

    def test_jmp_self(self):
        self.assertEqual(words('loop: jmp loop'), [0x5A00, 0x0000])

    def test_forward_reference(self):
        self.assertEqual(words('''
            jmp end
            add r1, r2, r3
            end: rts
        '''), [0x5A00, 0x0003, 0x00D1, 0x7838])

    def test_relative_forward(self):
        # beqz at 0, target at 3: displacement 3 - 0 - 1
        self.assertEqual(words('''
            beqz r0, target
            add r1, r2, r3
            target: add r1, r1, r1
        '''), [0x6800, 0x0002, 0x00D1, 0x0049])

    def test_relative_backward(self):
        self.assertEqual(words('''
            top: add r1, r2, r3
            br top
        '''), [0x00D1, 0x7400, 0xFFFE])

    def test_relative_numeric(self):
        # numeric branch targets are absolute addresses too
        self.assertEqual(words('br 0'), [0x7400, 0xFFFF])

    def test_stack_register(self):
        self.assertEqual(words('''
            jsr sub
            sub: push r3
            pop r2
            rts
        '''), [0x7638, 0x0002, 0x883B, 0x8A3A, 0x7838])

    def test_carry_variant(self):
        self.assertEqual(words('addc r1, r2, r3, 5'), [0x3ED1, 0x0005])

    def test_compare_jump(self):
        # jeq: s and t registers then absolute target
        self.assertEqual(words('here: jeq r1, r2, here'), [(33 << 9) | (1 << 3) | (2 << 6), 0])


class TestImmediates(unittest.TestCase):

    def imm(self, token):
        return words(f'li r1, {token}')[1]

    def test_decimal(self):       self.assertEqual(self.imm('42'), 42)
    def test_negative(self):      self.assertEqual(self.imm('-1'), 0xFFFF)
    def test_plus(self):          self.assertEqual(self.imm('+7'), 7)
    def test_hex(self):           self.assertEqual(self.imm('0x1f'), 0x1F)
    def test_hex_upper(self):     self.assertEqual(self.imm('0XBEEF'), 0xBEEF)
    def test_binary(self):        self.assertEqual(self.imm('0b101'), 5)
    def test_negative_hex(self):  self.assertEqual(self.imm('-0x10'), 0xFFF0)
    def test_max(self):           self.assertEqual(self.imm('65535'), 0xFFFF)
    def test_min(self):           self.assertEqual(self.imm('-32768'), 0x8000)

    def test_label_value(self):
        self.assertEqual(words('''
            li r1, data
            data: rts
        '''), [0x7E01, 0x0002, 0x7838])

    def test_overflow(self):
        with self.assertRaises(AssemblerError) as cm:
            words('li r1, 0x10000')
        self.assertEqual(cm.exception.kind, ErrorKind.BAD_NUMBER)

    def test_bad_binary(self):
        with self.assertRaises(AssemblerError) as cm:
            words('li r1, 0b102')
        self.assertEqual(cm.exception.kind, ErrorKind.BAD_NUMBER)

    def test_undefined_label(self):
        with self.assertRaises(AssemblerError) as cm:
            words('jmp nowhere')
        self.assertEqual(cm.exception.kind, ErrorKind.UNDEFINED_LABEL)


# ─────────────────────────────────────────────────────────────────────────────
class TestArity(AsmErrorCase):

    @staticmethod
    def operands_for(fmt):
        return ['r1' if role in 'dst' else '0' for role in fmt]

    def test_exact_count_succeeds(self):
        for spec in INSTRUCTIONS.values():
            ops = self.operands_for(spec.operands)
            src = f"{spec.mnemonic} {', '.join(ops)}"
            with self.subTest(mnemonic=spec.mnemonic):
                out = words(src)
                self.assertEqual(len(out), spec.size)
                self.assertEqual(out[0] >> 9, spec.opcode)

    def test_too_many(self):
        for spec in INSTRUCTIONS.values():
            ops = self.operands_for(spec.operands) + ['r1']
            with self.subTest(mnemonic=spec.mnemonic):
                self.assertAsmError(f"{spec.mnemonic} {', '.join(ops)}", ErrorKind.OPERAND_COUNT)

    def test_too_few(self):
        for spec in INSTRUCTIONS.values():
            if not spec.operands:
                continue
            ops = self.operands_for(spec.operands)[:-1]
            with self.subTest(mnemonic=spec.mnemonic):
                self.assertAsmError(f"{spec.mnemonic} {', '.join(ops)}", ErrorKind.OPERAND_COUNT)


class TestErrors(AsmErrorCase):

    def test_duplicate_label(self):
        self.assertAsmError('''
            x: add r1, r2, r3
            x: rts
        ''', ErrorKind.DUPLICATE_LABEL)

    def test_duplicate_with_label_only_line(self):
        self.assertAsmError('''
            x:
            x: rts
        ''', ErrorKind.DUPLICATE_LABEL)

    def test_duplicate_with_label_and_number(self):
        self.assertAsmError('''
            x: 123
            x: rts
        ''', ErrorKind.DUPLICATE_LABEL)

    def test_missing_comma_is_arity_error(self):
        self.assertAsmError('add r1 r2', ErrorKind.OPERAND_COUNT)

    def test_foreign_comment_lines_skipped(self):
        self.assertEqual(words('''
            ; header
            .org 5
            // -----
            add r1, r2, r3 ; note
        '''), [0x00D1])

    def test_label_alone_is_not_bound(self):
        self.assertAsmError('''
            alone:
            jmp alone
        ''', ErrorKind.UNDEFINED_LABEL)

    def test_label_alone_emits_nothing(self):
        program = assemble('alone:\nadd r1, r2, r3\n')
        self.assertEqual(program.words, [0x00D1])
        self.assertEqual(program.labels, {})

    def test_unknown_mnemonic(self):
        err = self.assertAsmError('add r1, r2, r3\nfrob r1\n', ErrorKind.UNKNOWN_MNEMONIC)
        self.assertEqual(err.line_num, 2)
        self.assertEqual(err.line, 'frob r1')

    def test_bad_register(self):
        self.assertAsmError('add r1, r8, r3', ErrorKind.BAD_REGISTER)
        self.assertAsmError('add r1, sp, r3', ErrorKind.BAD_REGISTER)

    def test_message_has_context(self):
        err = self.assertAsmError('\n\nadd r1, r2', ErrorKind.OPERAND_COUNT)
        self.assertIn('Line 3', str(err))
        self.assertIn('add r1, r2', str(err))


# ─────────────────────────────────────────────────────────────────────────────
class TestProgram(unittest.TestCase):

    SRC = '''
        # count down r1 to zero
        start: li r1, 10
        loop:  dec r1
               bnez r1, loop
               jmp start
    '''

    def test_labels(self):
        program = assemble(textwrap.dedent(self.SRC))
        self.assertEqual(program.labels, {'start': 0, 'loop': 2})

    def test_deterministic(self):
        a = assemble(textwrap.dedent(self.SRC)).image().to_raw()
        b = assemble(textwrap.dedent(self.SRC)).image().to_raw()
        self.assertEqual(a, b)

    def test_raw_image(self):
        self.assertEqual(assemble('loop: jmp loop').image().to_raw(), 'v2.0 raw\n5a00\n0\n')

    def test_listing(self):
        lines = format_listing(assemble('add r1, r2, r3\nli r2, 1'))
        self.assertEqual(lines[0], '0000: 00d1 0000000011010001   add r1, r2, r3')
        self.assertTrue(lines[1].startswith('0001: 7e02'))
        self.assertEqual(lines[2], '0002: 0001 0000000000000001')

    def test_reusable_assembler(self):
        asm = Assembler()
        first = asm.assemble('x: jmp x')
        second = asm.assemble('x: jmp x')
        self.assertEqual(first.words, second.words)

    def test_disassemble(self):
        text = disassemble(assemble(textwrap.dedent(self.SRC)).image())
        self.assertIn('li r1, 0x000a', text)
        self.assertIn('dec r1', text)
        self.assertIn('bnez r1, -2', text)
        self.assertIn('-> 0x0002', text)
        self.assertIn('jmp 0x0000', text)


# ─────────────────────────────────────────────────────────────────────────────
class TestCli(unittest.TestCase):

    def run_main(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            main(argv)
        return out.getvalue()

    def test_writes_ram(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = os.path.join(tmp, 'prog.asm')
            with open(src, 'w') as f:
                f.write('loop: jmp loop\n')
            self.run_main([src])
            with open(os.path.join(tmp, 'prog.ram')) as f:
                self.assertEqual(f.read(), 'v2.0 raw\n5a00\n0\n')

    def test_binary_format(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = os.path.join(tmp, 'prog.asm')
            with open(src, 'w') as f:
                f.write('add r1, r2, r3\n')
            self.run_main([src, '--format', 'bin'])
            with open(os.path.join(tmp, 'prog.bin'), 'rb') as f:
                self.assertEqual(MemoryImage.decode(f.read()).words, [0x00D1])

    def test_disassemble_option(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = os.path.join(tmp, 'prog.asm')
            with open(src, 'w') as f:
                f.write('rts\n')
            self.run_main([src])
            out = self.run_main([os.path.join(tmp, 'prog.ram'), '--disassemble'])
            self.assertIn('rts', out)

    def test_disassemble_corrupt_image(self):
        with tempfile.TemporaryDirectory() as tmp:
            image = os.path.join(tmp, 'junk.bin')
            with open(image, 'wb') as f:
                f.write(b'not an image')
            with self.assertRaises(SystemExit) as cm:
                self.run_main([image, '--disassemble'])
            self.assertEqual(cm.exception.code, 1)

    def test_disassemble_directory(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(SystemExit) as cm:
                self.run_main([tmp, '--disassemble'])
            self.assertEqual(cm.exception.code, 1)

    def test_missing_argument(self):
        with self.assertRaises(SystemExit) as cm:
            self.run_main([])
        self.assertEqual(cm.exception.code, 1)

    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(SystemExit) as cm:
                self.run_main([os.path.join(tmp, 'nope.asm')])
            self.assertEqual(cm.exception.code, 1)

    def test_error_writes_nothing(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = os.path.join(tmp, 'bad.asm')
            with open(src, 'w') as f:
                f.write('add r1, r2, r3\njmp nowhere\n')
            with self.assertRaises(SystemExit) as cm:
                self.run_main([src])
            self.assertEqual(cm.exception.code, 1)
            self.assertFalse(os.path.exists(os.path.join(tmp, 'bad.ram')))


if __name__ == '__main__':
    unittest.main()
