from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, TextIO, Tuple, Union


class SimplError(Exception):
    """Base class for interpreter errors."""


class SimplLexError(SimplError):
    """A single lexeme or escape the lexer could not make sense of."""

    def __init__(self, message: str, line: int = 0, column: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column


class SimplLexErrors(SimplError):
    """Raised once lexing finished with one or more collected errors."""

    def __init__(self, errors: List[SimplLexError], filename: str = "<string>") -> None:
        count = len(errors)
        verb, noun = ("was", "error") if count == 1 else ("were", "errors")
        super().__init__(f"there {verb} {count} {noun} lexing '{filename}'")
        self.errors = errors
        self.filename = filename


class SimplParseError(SimplError):
    """Raised when parsing fails."""


OPERATOR = "OPERATOR"
COMPARISON = "COMPARISON"
ASSIGN = "ASSIGN"
BUILTIN = "BUILTIN"
KEYWORD = "KEYWORD"
VARIABLE = "VARIABLE"
STRING = "STRING"
NUMBER = "NUMBER"
PAREN = "PAREN"
NEWLINE = "NEWLINE"


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int = 0
    column: int = 0


FIXED_TOKENS: Dict[str, str] = {
    "+": OPERATOR,
    "-": OPERATOR,
    "*": OPERATOR,
    "/": OPERATOR,
    "%": OPERATOR,
    "<": COMPARISON,
    ">": COMPARISON,
    "==": COMPARISON,
    "!=": COMPARISON,
    "&": COMPARISON,
    "|": COMPARISON,
    "print": BUILTIN,
    "goto": BUILTIN,
    "if": KEYWORD,
    "=": ASSIGN,
    "(": PAREN,
    ")": PAREN,
}

ESCAPES: Dict[str, str] = {
    "n": "\n",
    "t": "\t",
    '"': '"',
    "'": "'",
    "\\": "\\",
}

# Lexer states.
NORMAL = "NORMAL"
IN_STRING = "STRING"
ESCAPING = "ESCAPE"
IN_COMMENT = "COMMENT"


def _is_number(text: str) -> bool:
    if "_" in text or not text.isascii():
        return False
    try:
        float(text)
    except ValueError:
        return False
    return True


def classify(text: str) -> str:
    """Return the token type of a complete lexeme or raise SimplLexError."""
    fixed = FIXED_TOKENS.get(text)
    if fixed is not None:
        return fixed
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        return STRING
    if _is_number(text):
        return NUMBER
    if text and text.isascii() and text.isalnum():
        return VARIABLE
    raise SimplLexError(f"unrecognized token: '{text}'")


class Lexer:
    def __init__(self, source: Union[str, TextIO], filename: str = "<string>") -> None:
        # Read failures on a stream are not lex errors; let them propagate.
        self.text = source if isinstance(source, str) else source.read()
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> Tuple[List[Token], List[SimplLexError]]:
        self.tokens: List[Token] = []
        self.errors: List[SimplLexError] = []
        self._pending: List[str] = []
        self._pending_pos: Optional[Tuple[int, int]] = None
        self._state = NORMAL
        self._escape_return = NORMAL
        self._string_pos = (self.line, self.column)

        handlers = {
            NORMAL: self._lex_normal,
            IN_STRING: self._lex_string,
            ESCAPING: self._lex_escape,
            IN_COMMENT: self._lex_comment,
        }
        text = self.text
        n = len(text)
        while self.index < n:
            ch = text[self.index]
            handlers[self._state](ch)
            self._advance()

        if self._state == IN_STRING or (self._state == ESCAPING and self._escape_return == IN_STRING):
            line, col = self._string_pos
            self._error("unterminated string literal", line, col)
        else:
            self._flush()
        return self.tokens, self.errors

    def _lex_normal(self, ch: str) -> None:
        if ch in " \t\r":
            self._flush()
            return
        if ch == "\n":
            self._flush()
            self._emit(NEWLINE, "\n", self.line, self.column)
            return
        if ch == '"':
            self._flush()
            self._string_pos = (self.line, self.column)
            self._state = IN_STRING
            return
        if ch == "#":
            self._flush()
            self._state = IN_COMMENT
            return
        if ch == "\\":
            self._begin_escape()
            return
        self._append(ch)

    def _lex_string(self, ch: str) -> None:
        if ch == '"':
            line, col = self._string_pos
            self._emit(STRING, "".join(self._pending), line, col)
            self._pending = []
            self._pending_pos = None
            self._state = NORMAL
            return
        if ch == "\\":
            self._begin_escape()
            return
        self._append(ch)

    def _lex_escape(self, ch: str) -> None:
        resolved = ESCAPES.get(ch)
        if resolved is None:
            self._error(f"unknown escape: '\\{ch}'", self.line, self.column - 1)
        else:
            self._append(resolved)
        self._state = self._escape_return

    def _lex_comment(self, ch: str) -> None:
        if ch == "\n":
            self._emit(NEWLINE, "\n", self.line, self.column)
            self._state = NORMAL

    def _begin_escape(self) -> None:
        self._escape_return = self._state
        self._state = ESCAPING

    def _append(self, ch: str) -> None:
        if self._pending_pos is None:
            self._pending_pos = (self.line, self.column)
        self._pending.append(ch)

    def _flush(self) -> None:
        if not self._pending:
            return
        lexeme = "".join(self._pending)
        line, col = self._pending_pos or (self.line, self.column)
        self._pending = []
        self._pending_pos = None
        try:
            token_type = classify(lexeme)
        except SimplLexError as err:
            self._error(err.message, line, col)
            return
        self._emit(token_type, lexeme, line, col)

    def _emit(self, token_type: str, value: str, line: int, column: int) -> None:
        self.tokens.append(Token(token_type, value, line, column))

    def _error(self, message: str, line: int, column: int) -> None:
        self.errors.append(
            SimplLexError(f"{message} at {self.filename}:{line}:{column}", line, column)
        )

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
