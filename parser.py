from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from lexer import (
    ASSIGN,
    BUILTIN,
    COMPARISON,
    KEYWORD,
    NEWLINE,
    NUMBER,
    OPERATOR,
    PAREN,
    STRING,
    VARIABLE,
    SimplParseError,
    Token,
)


PRECEDENCE: Dict[str, int] = {
    "goto": -1,
    "print": -1,
    ">": 0,
    "<": 0,
    "==": 0,
    "!=": 0,
    "|": 1,
    "&": 1,
    "+": 2,
    "-": 2,
    "*": 3,
    "/": 3,
    "%": 3,
    "=": 4,
    "if": 5,
}

BINARY_TYPES = (OPERATOR, COMPARISON)
LEAF_TYPES = (NUMBER, STRING, VARIABLE)


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


def _render_token(token: Token) -> str:
    if token.type == STRING:
        return '"' + token.value.replace("\\", "\\\\").replace("\n", "\\n").replace("\t", "\\t").replace('"', '\\"') + '"'
    return token.value


@dataclass(repr=False)
class Node:
    token: Token
    left: Optional["Node"] = None
    right: Optional["Node"] = None

    def __repr__(self) -> str:
        return f"Node({self.render()})"

    def height(self) -> int:
        depth = 0
        level: List[Node] = [self]
        while level:
            depth += 1
            level = [child for node in level for child in (node.left, node.right) if child is not None]
        return depth

    def dump(self) -> str:
        """Breadth-first dump, one line per tree level.

        Each entry is prefixed with its path from the root, e.g. ``:L:R``.
        """
        lines: List[str] = []
        level: List[tuple] = [("", self)]
        while level:
            lines.append(" ".join(f"{side} {node.token.type}({node.token.value!r})".strip() for side, node in level))
            next_level: List[tuple] = []
            for side, node in level:
                if node.left is not None:
                    next_level.append((side + ":L", node.left))
                if node.right is not None:
                    next_level.append((side + ":R", node.right))
            level = next_level
        return "\n".join(lines)

    def render(self) -> str:
        """S-expression form, e.g. ``(= i (+ i 1))``."""
        rendered: List[str] = []
        pending: List[Tuple[Node, bool]] = [(self, False)]
        while pending:
            node, expanded = pending.pop()
            children = [child for child in (node.left, node.right) if child is not None]
            if not children:
                rendered.append(_render_token(node.token))
            elif not expanded:
                pending.append((node, True))
                pending.extend((child, False) for child in reversed(children))
            else:
                parts = rendered[-len(children):]
                del rendered[-len(children):]
                rendered.append("(" + " ".join([_render_token(node.token), *parts]) + ")")
        return rendered[0]


@dataclass
class Program:
    lines: List[Node]
    filename: str = "<string>"
    source_lines: List[str] = field(default_factory=list)

    def location(self, index: int) -> SourceLocation:
        token = self.lines[index].token
        statement = ""
        if 0 < token.line <= len(self.source_lines):
            statement = self.source_lines[token.line - 1].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


class Parser:
    """Operator-precedence parser producing one tree per statement line.

    Operators of equal precedence nest to the right (``a > b > c`` is
    ``a > (b > c)``); builtins take the whole following expression, an
    assignment takes the whole right-hand expression and ``if`` guards the
    statement that follows its condition. Expressions are built on explicit
    operand and operator stacks, so long chains do not deepen the Python
    call stack.
    """

    def __init__(self, tokens: List[Token], filename: str = "<string>", source_lines: Optional[List[str]] = None):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines if source_lines is not None else []
        self.index = 0

    def parse(self) -> Program:
        lines: List[Node] = []
        while not self._eof:
            if self._match(NEWLINE):
                continue
            lines.append(self._parse_statement())
            if not self._eof and self._peek().type != NEWLINE:
                token = self._peek()
                raise self._error(f"Unexpected token '{token.value}'", token)
        return Program(lines=lines, filename=self.filename, source_lines=self.source_lines)

    def _parse_statement(self) -> Node:
        guards: List[Tuple[Token, Node]] = []
        token = self._peek_or_fail("statement")
        while token.type == KEYWORD:
            self.index += 1
            condition = self._parse_expression()
            if self._at_statement_end():
                raise self._error(f"Missing guarded statement after '{token.value}'", token)
            guards.append((token, condition))
            token = self._peek()

        if token.type == BUILTIN:
            self.index += 1
            statement = Node(token, right=self._parse_expression())
        elif token.type == VARIABLE and self._peek_next_type() == ASSIGN:
            self.index += 1
            assign = self._next()
            statement = Node(assign, left=Node(token), right=self._parse_expression())
        else:
            statement = self._parse_expression()

        for keyword, condition in reversed(guards):
            statement = Node(keyword, left=condition, right=statement)
        return statement

    def _parse_expression(self) -> Node:
        operands: List[Node] = []
        # Binary operator tokens and open-paren sentinels.
        operators: List[Token] = []
        depth = 0
        expect_operand = True
        while True:
            if expect_operand:
                token = self._peek_or_fail("operand")
                if token.type in LEAF_TYPES:
                    operands.append(Node(token))
                    expect_operand = False
                elif token.type == PAREN and token.value == "(":
                    operators.append(token)
                    depth += 1
                elif token.type == PAREN:
                    raise self._error("Unmatched ')'", token)
                elif token.type == ASSIGN:
                    raise self._error("Assignment target must be a variable", token)
                else:
                    raise self._error(f"Expected operand but found '{token.value}'", token)
                self.index += 1
                continue

            if self._at_statement_end():
                if depth:
                    self._peek_or_fail("')'")
                break
            token = self._peek()
            if token.type in BINARY_TYPES:
                precedence = PRECEDENCE[token.value]
                # Only strictly higher precedence resolves first; ties nest right.
                while operators and operators[-1].type != PAREN and PRECEDENCE[operators[-1].value] > precedence:
                    self._reduce(operands, operators)
                operators.append(token)
                expect_operand = True
            elif depth and token.type == PAREN and token.value == ")":
                while operators[-1].type != PAREN:
                    self._reduce(operands, operators)
                operators.pop()
                depth -= 1
            elif depth:
                raise self._error(f"Expected ')' but found '{token.value}'", token)
            else:
                break
            self.index += 1

        while operators:
            self._reduce(operands, operators)
        return operands[0]

    @staticmethod
    def _reduce(operands: List[Node], operators: List[Token]) -> None:
        op = operators.pop()
        right = operands.pop()
        left = operands.pop()
        operands.append(Node(op, left=left, right=right))

    def _peek_or_fail(self, expected: str) -> Token:
        if self._at_statement_end():
            last = self.tokens[self.index] if not self._eof else (self.tokens[-1] if self.tokens else None)
            where = f"{self.filename}:{last.line}:{last.column}" if last is not None else self.filename
            raise SimplParseError(f"Expected {expected} before end of statement at {where}")
        return self.tokens[self.index]

    def _at_statement_end(self) -> bool:
        return self._eof or self._peek().type == NEWLINE

    def _error(self, message: str, token: Token) -> SimplParseError:
        return SimplParseError(f"{message} at {self.filename}:{token.line}:{token.column}")

    def _match(self, token_type: str) -> bool:
        if not self._eof and self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _next(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next_type(self) -> Optional[str]:
        if self.index + 1 < len(self.tokens):
            return self.tokens[self.index + 1].type
        return None

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.tokens)
