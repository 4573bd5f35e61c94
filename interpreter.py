from __future__ import annotations
import json
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, TextIO, Tuple, Union

import numpy as np

from lexer import (
    ASSIGN,
    BUILTIN,
    COMPARISON,
    KEYWORD,
    NUMBER,
    OPERATOR,
    STRING,
    VARIABLE,
    Lexer,
    SimplError,
    SimplLexErrors,
)
from parser import Node, Parser, Program, SourceLocation


TYPE_NUM = "NUM"
TYPE_STR = "STR"
TYPE_BOOL = "BOOL"

# Default number of state log entries kept for tracebacks.
DEFAULT_HISTORY = 1000

# Work stack phases used by Interpreter._evaluate.
_VISIT = 0
_APPLY = 1
_GUARDED = 2


@dataclass(frozen=True)
class Value:
    type: str
    value: Any


ZERO = Value(TYPE_NUM, 0.0)


class SimplRuntimeError(SimplError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class TypeMismatch(SimplRuntimeError):
    """An operator received operands of a type it cannot work with."""


class JumpSignal(Exception):
    def __init__(self, target: int) -> None:
        super().__init__(target)
        self.target = target


def _format_number(x: float) -> str:
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "+Inf" if x > 0 else "-Inf"
    scientific = np.format_float_scientific(x, trim="-", exp_digits=2)
    exponent = int(scientific.rsplit("e", 1)[1])
    if -4 <= exponent < 6:
        return np.format_float_positional(x, trim="-")
    return scientific


def format_value(value: Value) -> str:
    """Default textual form of a value, as written by ``print``."""
    if value.type == TYPE_STR:
        return str(value.value)
    if value.type == TYPE_BOOL:
        return "true" if value.value else "false"
    return _format_number(float(value.value))


@dataclass
class Environment:
    values: Dict[str, Value] = field(default_factory=dict)

    def set(self, name: str, value: Value) -> None:
        self.values[name] = value

    def get(self, name: str) -> Value:
        # Unset variables read as numeric zero.
        return self.values.get(name, ZERO)

    def get_optional(self, name: str) -> Optional[Value]:
        return self.values.get(name)

    def has(self, name: str) -> bool:
        return name in self.values

    def snapshot(self) -> Dict[str, str]:
        def _render(val: Value) -> str:
            rendered = format_value(val)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{val.type}:{rendered}"

        return {k: _render(v) for k, v in self.values.items()}


BinaryImpl = Callable[[Value, Value, Optional[SourceLocation]], Value]


class Operators:
    """Dispatch table for the arithmetic and comparison operators."""

    def __init__(self) -> None:
        self.table: Dict[str, BinaryImpl] = {
            "+": self._add,
            "-": self._sub,
            "*": self._mul,
            "/": self._div,
            "%": self._mod,
            "&": self._and,
            "|": self._or,
            "==": self._eq,
            "!=": self._ne,
            ">": self._gt,
            "<": self._lt,
        }

    def apply(self, op: str, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        impl = self.table.get(op)
        if impl is None:
            raise SimplRuntimeError(f"Unknown operator '{op}'", location=location, rule="OPERATOR")
        return impl(left, right, location)

    def _expect_num(self, value: Value, rule: str, location: Optional[SourceLocation]) -> float:
        if value.type != TYPE_NUM:
            raise TypeMismatch(f"{rule} expects NUM operands, got {value.type}", location=location, rule=rule)
        return float(value.value)

    def to_float(self, value: Value, rule: str, location: Optional[SourceLocation]) -> float:
        if value.type == TYPE_BOOL:
            return 1.0 if value.value else 0.0
        if value.type == TYPE_NUM:
            return float(value.value)
        raise TypeMismatch(f"{rule} cannot use a {value.type} value as a number", location=location, rule=rule)

    def _add(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        if left.type == TYPE_STR or right.type == TYPE_STR:
            return Value(TYPE_STR, format_value(left) + format_value(right))
        return Value(TYPE_NUM, self._expect_num(left, "ADD", location) + self._expect_num(right, "ADD", location))

    def _sub(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        return Value(TYPE_NUM, self._expect_num(left, "SUB", location) - self._expect_num(right, "SUB", location))

    def _mul(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        return Value(TYPE_NUM, self._expect_num(left, "MUL", location) * self._expect_num(right, "MUL", location))

    def _div(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a = np.float64(self._expect_num(left, "DIV", location))
        b = np.float64(self._expect_num(right, "DIV", location))
        # IEEE 754 semantics: x/0 is +/-Inf, 0/0 is NaN.
        with np.errstate(divide="ignore", invalid="ignore"):
            result = np.divide(a, b)
        return Value(TYPE_NUM, float(result))

    def _mod(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a = self._expect_num(left, "MOD", location)
        b = self._expect_num(right, "MOD", location)
        if not (math.isfinite(a) and math.isfinite(b)):
            raise SimplRuntimeError("MOD operands must be finite", location=location, rule="MOD")
        ia, ib = int(a), int(b)
        if ib == 0:
            raise SimplRuntimeError("integer divide by zero", location=location, rule="MOD")
        # Truncated remainder: the sign follows the left operand.
        rem = abs(ia) % abs(ib)
        return Value(TYPE_NUM, float(-rem if ia < 0 else rem))

    def _and(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a = self.to_float(left, "AND", location)
        b = self.to_float(right, "AND", location)
        return Value(TYPE_BOOL, a != 0 and b != 0)

    def _or(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a = self.to_float(left, "OR", location)
        b = self.to_float(right, "OR", location)
        return Value(TYPE_BOOL, a != 0 or b != 0)

    def _eq(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        return Value(TYPE_BOOL, self.to_float(left, "EQ", location) == self.to_float(right, "EQ", location))

    def _ne(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        return Value(TYPE_BOOL, self.to_float(left, "NE", location) != self.to_float(right, "NE", location))

    def _gt(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        return Value(TYPE_BOOL, self.to_float(left, "GT", location) > self.to_float(right, "GT", location))

    def _lt(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        return Value(TYPE_BOOL, self.to_float(left, "LT", location) < self.to_float(right, "LT", location))


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]
    rewrite_record: Optional[Dict[str, Any]]


class StateLogger:
    """Records one entry per executed statement.

    Only the most recent ``history`` entries are kept so that long running
    goto loops do not grow without bound; ``step_count`` counts every step.
    """

    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.step_count = 0
        self.last_state_id = "seed"

    def record(
        self,
        *,
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        rewrite = {} if rewrite_record is None else rewrite_record
        if "from_state_id" not in rewrite:
            rewrite["from_state_id"] = self.last_state_id
        step_index = self.step_count
        state_id = f"s_{step_index:06d}"
        rewrite["to_state_id"] = state_id
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            source_location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            rewrite_record=rewrite,
        )
        self.entries.append(entry)
        self.last_state_id = state_id
        self.step_count += 1
        return entry

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


class Interpreter:
    def __init__(
        self,
        *,
        source: Union[str, TextIO],
        filename: str = "<string>",
        verbose: bool = False,
        output_sink: Optional[Callable[[str], None]] = None,
        env: Optional[Environment] = None,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.source = source
        self.filename = filename
        self.verbose = verbose
        self.output_sink = output_sink or (lambda text: print(text, end=""))
        self.env = env if env is not None else Environment()
        self.operators = Operators()
        self.logger = StateLogger(verbose=verbose, history=history)
        self.program: Optional[Program] = None
        self.last_value: Optional[Value] = None

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename)
        tokens, errors = lexer.tokenize()
        if errors:
            raise SimplLexErrors(errors, self.filename)
        parser = Parser(tokens, self.filename, lexer.text.split("\n"))
        return parser.parse()

    def run(self) -> Optional[Value]:
        return self.execute(self.parse())

    def execute(self, program: Program) -> Optional[Value]:
        """Run every statement of ``program`` and return the last value."""
        self.program = program
        lines = program.lines
        env = self.env
        evaluate = self._evaluate
        ip = 0
        location: Optional[SourceLocation] = None
        try:
            while ip < len(lines):
                node = lines[ip]
                location = program.location(ip)
                self._log_step(rule=self._rule_for(node), location=location, extra={"line": ip + 1})
                ip += 1
                try:
                    self.last_value = evaluate(node, env, location)
                except JumpSignal as js:
                    self.last_value = None
                    self._log_step(rule="JUMP", location=location, extra={"target": js.target + 1})
                    ip = js.target
        except SimplRuntimeError as error:
            if error.location is None:
                error.location = location
            if self.logger.last_entry is not None:
                error.step_index = self.logger.last_entry.step_index
            raise
        except Exception as exc:
            # Surface unexpected Python-level failures as interpreter errors
            # so callers can format them like any other runtime fault.
            wrapped = SimplRuntimeError(f"Internal interpreter error: {exc}", location=location, rule="internal")
            if self.logger.last_entry is not None:
                wrapped.step_index = self.logger.last_entry.step_index
            raise wrapped from exc
        return self.last_value

    def _evaluate(self, node: Optional[Node], env: Environment, location: Optional[SourceLocation]) -> Optional[Value]:
        """Evaluate one statement tree, left child before right child.

        Uses an explicit work stack; ``values`` collects child results.
        """
        values: List[Optional[Value]] = []
        work: List[Tuple[Optional[Node], int]] = [(node, _VISIT)]
        while work:
            current, phase = work.pop()
            if current is None:
                values.append(ZERO)
                continue
            token = current.token
            kind = token.type

            if phase == _VISIT:
                if kind == VARIABLE:
                    values.append(env.get(token.value))
                elif kind == STRING:
                    values.append(Value(TYPE_STR, token.value))
                elif kind == NUMBER:
                    values.append(Value(TYPE_NUM, float(token.value)))
                elif kind == OPERATOR or kind == COMPARISON:
                    work.extend(((current, _APPLY), (current.right, _VISIT), (current.left, _VISIT)))
                elif kind == BUILTIN and token.value in ("print", "goto"):
                    work.extend(((current, _APPLY), (current.right, _VISIT)))
                elif kind == KEYWORD:
                    work.extend(((current, _APPLY), (current.left, _VISIT)))
                elif kind == ASSIGN:
                    target = current.left
                    if target is None or target.token.type != VARIABLE:
                        raise SimplRuntimeError("Assignment target must be a variable", location=location, rule="ASSIGN")
                    work.extend(((current, _APPLY), (current.right, _VISIT)))
                else:
                    raise SimplRuntimeError(
                        f"cannot evaluate node of class {kind} ('{token.value}')", location=location, rule=kind
                    )
                continue

            if phase == _GUARDED:
                # An if statement yields no value whatever its body yields.
                values.pop()
                values.append(None)
                continue

            if kind == OPERATOR or kind == COMPARISON:
                right_value = values.pop()
                left = self._operand(values.pop(), current.left, location)
                right = self._operand(right_value, current.right, location)
                values.append(self.operators.apply(token.value, left, right, location))
            elif kind == BUILTIN:
                argument = self._operand(values.pop(), current.right, location)
                if token.value == "goto":
                    raise JumpSignal(self._jump_target(argument, location))
                self.output_sink(format_value(argument))
                values.append(None)
            elif kind == KEYWORD:
                condition = self._operand(values.pop(), current.left, location)
                if self.operators.to_float(condition, "IF", location) != 0:
                    work.extend(((current, _GUARDED), (current.right, _VISIT)))
                else:
                    values.append(None)
            else:
                env.set(current.left.token.value, self._operand(values.pop(), current.right, location))
                values.append(None)
        return values[0]

    @staticmethod
    def _operand(value: Optional[Value], node: Node, location: Optional[SourceLocation]) -> Value:
        if value is None:
            raise SimplRuntimeError(
                f"'{node.token.value}' does not produce a value", location=location, rule="OPERAND"
            )
        return value

    def _jump_target(self, value: Value, location: Optional[SourceLocation]) -> int:
        line = self.operators.to_float(value, "GOTO", location)
        if not math.isfinite(line):
            raise SimplRuntimeError("goto target must be a finite line number", location=location, rule="GOTO")
        # 1-based line number; anything at or below 1 restarts the program.
        return max(int(line) - 1, 0)

    @staticmethod
    def _rule_for(node: Node) -> str:
        if node.token.type == BUILTIN:
            return node.token.value.upper()
        return node.token.type

    def _log_step(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        env_snapshot = self.env.snapshot() if self.verbose else None
        statement = location.statement if location else None
        rewrite = {"rule": rule}
        if extra:
            rewrite.update(extra)
        self.logger.record(
            location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            rewrite_record=rewrite,
        )


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def format_text(self, error: SimplRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        entry = self.interpreter.logger.last_entry
        location = error.location or (entry.source_location if entry else None)
        if location:
            lines.append(f"  File \"{location.file}\", line {location.line}, in <top-level>")
            if location.statement:
                lines.append(f"    {location.statement}")
        else:
            lines.append("  <unknown location> in <top-level>")
        if entry:
            lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
            if verbose and entry.env_snapshot is not None:
                snapshot = ", ".join(f"{k}={v}" for k, v in entry.env_snapshot.items())
                lines.append(f"    Env snapshot: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: SimplRuntimeError) -> str:
        frame: Dict[str, Any] = {"frame_index": 0, "name": "<top-level>"}
        entry = self.interpreter.logger.last_entry
        location = error.location or (entry.source_location if entry else None)
        if location:
            frame["source_location"] = {
                "file": location.file,
                "line": location.line,
                "statement": location.statement,
            }
        if entry:
            frame["state_id"] = entry.state_id
            frame["step_index"] = entry.step_index
            if entry.env_snapshot is not None:
                frame["env_snapshot"] = entry.env_snapshot
            if entry.rewrite_record is not None:
                frame["rewrite_record"] = entry.rewrite_record
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "failing_step_index": error.step_index,
            },
            "traceback": [frame],
        }
        return json.dumps(data, indent=2)
