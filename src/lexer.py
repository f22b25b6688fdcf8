"""
Line tokenizer shared by the macro- and micro-assembler.

Tokens:
    WORD     [+-]?\\w+      mnemonics, registers, labels, numbers, signal values
    COLON    :             ends a label
    COMMA    ,             separates operands / clauses
    EQUALS   =             binds a control signal to its value
    OTHER    any other     the rest of the line is not scanned

Everything from '#' to the end of the line is a comment.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from mimo import AssemblerError, ErrorKind

WORD = 'WORD'
COLON = 'COLON'
COMMA = 'COMMA'
EQUALS = 'EQUALS'
OTHER = 'OTHER'

_PUNCTUATION = {':': COLON, ',': COMMA, '=': EQUALS}

TOKEN_RE = re.compile(r'\s*(?:(?P<comment>#.*)|(?P<word>[+-]?\w+)|(?P<punct>[:,=])|(?P<other>\S))')


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    column: int


def tokenize(line: str) -> List[Token]:
    """Split one source line into tokens, dropping the comment.

    Scanning stops at the first character that starts no token. It is kept
    as a single OTHER token so the parser can decide what the line is.
    """
    tokens = []
    pos = 0
    while pos < len(line):
        m = TOKEN_RE.match(line, pos)
        if m is None:
            # only trailing whitespace is left
            break
        pos = m.end()
        if m.group('comment') is not None:
            break
        if m.group('word') is not None:
            tokens.append(Token(WORD, m.group('word'), m.start('word')))
        elif m.group('punct') is not None:
            tokens.append(Token(_PUNCTUATION[m.group('punct')], m.group('punct'), m.start('punct')))
        elif m.group('other') is not None:
            tokens.append(Token(OTHER, m.group('other'), m.start('other')))
            break
    return tokens


class TokenStream:
    """Cursor over the tokens of one line, for recursive-descent parsing."""

    def __init__(self, line: str, line_num: int = 0):
        self.line = line
        self.line_num = line_num
        self.tokens = tokenize(line)
        self.pos = 0

    def error(self, message: str, kind: ErrorKind = ErrorKind.SYNTAX):
        raise AssemblerError(message, self.line_num, self.line, kind)

    def peek(self, ahead: int = 0) -> Optional[Token]:
        index = self.pos + ahead
        return self.tokens[index] if index < len(self.tokens) else None

    def peek_kind(self, ahead: int = 0) -> Optional[str]:
        token = self.peek(ahead)
        return token.kind if token else None

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            self.error("Unexpected end of line")
        self.pos += 1
        return token

    def accept(self, kind: str) -> Optional[Token]:
        """Consume and return the next token if it has the given kind."""
        if self.peek_kind() == kind:
            return self.next()
        return None

    def expect(self, kind: str, what: str) -> Token:
        token = self.peek()
        if token is None or token.kind != kind:
            found = f"'{token.text}'" if token else "end of line"
            self.error(f"Expected {what}, found {found}")
        return self.next()

    def accept_label(self) -> Optional[str]:
        """Consume a leading 'name:' if present."""
        token = self.peek()
        if (token is not None and token.kind == WORD and token.text[0] not in '+-'
                and self.peek_kind(1) == COLON):
            self.pos += 2
            return token.text
        return None
