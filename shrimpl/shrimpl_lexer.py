"""
Indentation-aware tokenizer for Shrimpl source text.

The lexer turns source into a flat token list. Logical lines end with a
NEWLINE token; changes in leading indentation produce INDENT / DEDENT
tokens, tracked with a stack of column depths. Inside (), [] and {} the
line structure is ignored so literals may span several lines.
"""

from typing import List, Optional

TAB_WIDTH = 4

KEYWORDS = {
    "server", "endpoint", "func", "class", "model", "import",
    "GET", "POST", "json",
    "if", "elif", "else", "repeat", "times",
    "and", "or", "true", "false",
    "try", "catch", "finally", "test", "secret",
}

# Longest operators first so '==' wins over '='.
OPERATORS = ["==", "!=", "<=", ">=", "+", "-", "*", "/", "<", ">", ":", ".", "(", ")", ",", "[", "]", "{", "}", "?", "="]

OPENERS = {"(": ")", "[": "]", "{": "}"}

ESCAPES = {'"': '"', "\\": "\\", "/": "/", "n": "\n", "t": "\t", "r": "\r"}

# Token kinds for structure and literals; keywords and operators use their text as kind.
NUMBER = "NUMBER"
STRING = "STRING"
IDENT = "IDENT"
NEWLINE = "NEWLINE"
INDENT = "INDENT"
DEDENT = "DEDENT"
EOF = "EOF"


class ParseError(Exception):
    """A syntax error with the 1-based source position where it was detected."""
    def __init__(self, message: str, line: int = 0, column: int = 0):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column

    def __str__(self) -> str:
        if self.line:
            return f"{self.message} (line {self.line}, col {self.column})"
        return self.message


class LexError(ParseError):
    """Raised for malformed tokens; lexing never recovers."""
    pass


class Token:
    __slots__ = ("kind", "text", "value", "line", "column")

    def __init__(self, kind: str, text: str, line: int, column: int, value=None):
        self.kind = kind
        self.text = text
        self.value = value
        self.line = line
        self.column = column

    def __repr__(self) -> str:
        return f"Token({self.kind!r}, {self.text!r}, {self.line}, {self.column})"

    def __eq__(self, other):
        return (
            isinstance(other, Token)
            and self.kind == other.kind
            and self.text == other.text
            and self.value == other.value
        )


class Lexer:
    """Converts a source string into tokens. Use `tokenize(source)` for the one-shot form."""

    def __init__(self, source: str):
        self.source = source
        self.pos = 0
        self.line = 1
        self.col = 1
        self.tokens: List[Token] = []
        self.indents: List[int] = [0]
        # Bracket stack; while non-empty, newlines and indentation are insignificant.
        self.brackets: List[Token] = []
        self.at_line_start = True

    # --- character helpers ---

    def _peek(self, k: int = 0) -> str:
        i = self.pos + k
        return self.source[i] if i < len(self.source) else ""

    def _advance(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        if ch == "\n":
            self.line += 1
            self.col = 1
        else:
            self.col += 1
        return ch

    def _emit(self, kind: str, text: str, line: int, column: int, value=None):
        self.tokens.append(Token(kind, text, line, column, value))

    def _error(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        raise LexError(message, line or self.line, column or self.col)

    # --- main loop ---

    def tokenize(self) -> List[Token]:
        while self.pos < len(self.source):
            if self.at_line_start and not self.brackets:
                self._handle_line_start()
                continue
            ch = self._peek()
            if ch == "\n":
                self._newline()
                continue
            if ch in " \t\r":
                self._advance()
                continue
            if ch == "#":
                self._skip_comment()
                continue
            if ch.isdigit():
                self._number()
                continue
            if ch == '"':
                self._string()
                continue
            if ch.isalpha() or ch == "_":
                self._word()
                continue
            self._operator()
        return self._finish()

    def _handle_line_start(self):
        """Measure indentation of a new line; blank and comment-only lines are skipped."""
        width = 0
        while self._peek() in (" ", "\t"):
            ch = self._advance()
            if ch == "\t":
                width = (width // TAB_WIDTH + 1) * TAB_WIDTH
            else:
                width += 1
        ch = self._peek()
        if ch == "\r":
            self._advance()
            ch = self._peek()
        if ch == "":
            return
        if ch == "\n":
            self._advance()
            return
        if ch == "#":
            self._skip_comment()
            if self._peek() == "\n":
                self._advance()
            return
        self.at_line_start = False
        current = self.indents[-1]
        if width > current:
            self.indents.append(width)
            self._emit(INDENT, "", self.line, 1)
        elif width < current:
            while width < self.indents[-1]:
                self.indents.pop()
                self._emit(DEDENT, "", self.line, 1)
            if width != self.indents[-1]:
                self._error("unindent does not match any outer indentation level", self.line, 1)

    def _newline(self):
        line, col = self.line, self.col
        self._advance()
        if self.brackets:
            return
        if self.tokens and self.tokens[-1].kind not in (NEWLINE, INDENT, DEDENT):
            self._emit(NEWLINE, "\n", line, col)
        self.at_line_start = True

    def _skip_comment(self):
        while self._peek() not in ("", "\n"):
            self._advance()

    def _number(self):
        line, col = self.line, self.col
        start = self.pos
        while self._peek().isdigit():
            self._advance()
        if self._peek() == "." and self._peek(1).isdigit():
            self._advance()
            while self._peek().isdigit():
                self._advance()
        if self._peek() in ("e", "E"):
            k = 1
            if self._peek(1) in ("+", "-"):
                k = 2
            if self._peek(k).isdigit():
                for _ in range(k):
                    self._advance()
                while self._peek().isdigit():
                    self._advance()
        text = self.source[start:self.pos]
        if self._peek().isalpha() or self._peek() == "_":
            self._error(f"Invalid number literal '{text}{self._peek()}'", line, col)
        self._emit(NUMBER, text, line, col, float(text))

    def _string(self):
        line, col = self.line, self.col
        start = self.pos
        self._advance()  # opening quote
        chars = []
        while True:
            ch = self._peek()
            if ch == "" or ch == "\n":
                self._error("Unterminated string literal", line, col)
            if ch == '"':
                self._advance()
                break
            if ch == "\\":
                esc_line, esc_col = self.line, self.col
                self._advance()
                esc = self._peek()
                if esc == "u":
                    self._advance()
                    digits = self.source[self.pos:self.pos + 4]
                    if len(digits) != 4 or any(c not in "0123456789abcdefABCDEF" for c in digits):
                        self._error("Invalid \\u escape in string literal", esc_line, esc_col)
                    for _ in range(4):
                        self._advance()
                    chars.append(chr(int(digits, 16)))
                    continue
                if esc not in ESCAPES:
                    self._error(f"Invalid escape sequence '\\{esc}' in string literal", esc_line, esc_col)
                self._advance()
                chars.append(ESCAPES[esc])
                continue
            chars.append(self._advance())
        text = self.source[start:self.pos]
        self._emit(STRING, text, line, col, "".join(chars))

    def _word(self):
        line, col = self.line, self.col
        start = self.pos
        while self._peek().isalnum() or self._peek() == "_":
            self._advance()
        text = self.source[start:self.pos]
        kind = text if text in KEYWORDS else IDENT
        self._emit(kind, text, line, col)

    def _operator(self):
        line, col = self.line, self.col
        for op in OPERATORS:
            if self.source.startswith(op, self.pos):
                for _ in op:
                    self._advance()
                tok = Token(op, op, line, col)
                self.tokens.append(tok)
                if op in OPENERS:
                    self.brackets.append(tok)
                elif op in (")", "]", "}"):
                    if not self.brackets or OPENERS[self.brackets[-1].kind] != op:
                        self._error(f"Unbalanced '{op}'", line, col)
                    self.brackets.pop()
                return
        ch = self._peek()
        if ch == "!":
            self._error("Unexpected '!'; use '!=' for inequality comparisons", line, col)
        self._error(f"Unexpected character '{ch}'", line, col)

    def _finish(self) -> List[Token]:
        if self.brackets:
            opener = self.brackets[-1]
            self._error(f"Unclosed '{opener.kind}'", opener.line, opener.column)
        if self.tokens and self.tokens[-1].kind not in (NEWLINE, INDENT, DEDENT):
            self._emit(NEWLINE, "\n", self.line, self.col)
        while len(self.indents) > 1:
            self.indents.pop()
            self._emit(DEDENT, "", self.line, self.col)
        self._emit(EOF, "", self.line, self.col)
        return self.tokens


def tokenize(source: str) -> List[Token]:
    """Tokenize `source`, raising LexError on malformed input."""
    return Lexer(source).tokenize()
