import dataclasses
import io
import json
import math

import pytest

from interpreter import (
    TYPE_BOOL,
    TYPE_NUM,
    TYPE_STR,
    Environment,
    Interpreter,
    SimplRuntimeError,
    TracebackFormatter,
    TypeMismatch,
    Value,
    ZERO,
    format_value,
)
from lexer import PAREN, SimplLexErrors, SimplParseError, Token
from parser import Node, Program


def run(source, **kwargs):
    out = []
    interpreter = Interpreter(source=source, filename="<test>", output_sink=out.append, **kwargs)
    result = interpreter.run()
    return result, "".join(out)


def evaluate(source):
    result, _ = run(source)
    return result


@pytest.mark.parametrize(
    "source, expected",
    [
        ("1 + 1", 2.0),
        ("1 + 1 + 1", 3.0),
        ("69 * 4 + 5", 281.0),
        ("69 / 4 - 5", 12.25),
        ("0.420 + 0.69", 1.1099999999999999),
        (".42 + .6", 1.02),
        ("10 % 3", 1.0),
        ("3 % 3", 0.0),
        ("420 % 69", 6.0),
        ("-420 % 69", -6.0),
        ("-420 % -69", -6.0),
        ("420 % -69", 6.0),
        ("7.9 % 2.5", 1.0),
        ("10 - 2 - 3", 11.0),
    ],
)
def test_arithmetic(source, expected):
    assert evaluate(source) == Value(TYPE_NUM, expected)


def test_mixed_precedence_arithmetic():
    result = evaluate("420 + 69 * 6969 / 3000.4321")
    assert result.type == TYPE_NUM
    assert result.value == pytest.approx(580.2639166538713)


@pytest.mark.parametrize(
    "source, expected",
    [
        ("42 & 0", False),
        ("69 | 0", True),
        ("68 & 1 | 5 == 0", False),
        ("69 > 2", True),
        ("-2 > 3 > 5", False),
        ("-2 < 3 > 5", True),
        ("5 < 3", False),
        ("6.0 == 6", True),
        ("3 * 2 == 6", True),
        ("6 == 3 * 2", True),
        ("6 == 4 * 2", False),
        ("3 % 3 & 3 % 5", False),
        ("1 != 2", True),
        ("0 != 2 != 0", True),
        ("( 1 < 2 ) == 1", True),
    ],
)
def test_comparisons(source, expected):
    assert evaluate(source) == Value(TYPE_BOOL, expected)


@pytest.mark.parametrize(
    "source, expected",
    [
        ('"1" + "a"', "1a"),
        ('"a" + 1', "a1"),
        ('1 + "a"', "1a"),
        ('"x" + 2.5', "x2.5"),
        ('"v" + ( 1 < 2 )', "vtrue"),
        ('"n" + 1000000', "n1e+06"),
        ('"sum: " + 1 + 2', "sum: 3"),
    ],
)
def test_plus_concatenates_text(source, expected):
    assert evaluate(source) == Value(TYPE_STR, expected)


def test_division_follows_ieee_754():
    assert evaluate("1 / 0").value == math.inf
    assert evaluate("-1 / 0").value == -math.inf
    assert math.isnan(evaluate("0 / 0").value)


@pytest.mark.parametrize(
    "value, expected",
    [
        (Value(TYPE_NUM, 2.0), "2"),
        (Value(TYPE_NUM, 12.25), "12.25"),
        (Value(TYPE_NUM, -0.5), "-0.5"),
        (Value(TYPE_NUM, 123456.0), "123456"),
        (Value(TYPE_NUM, 1e6), "1e+06"),
        (Value(TYPE_NUM, 0.0001), "0.0001"),
        (Value(TYPE_NUM, 0.00001), "1e-05"),
        (Value(TYPE_NUM, 1.5e-7), "1.5e-07"),
        (Value(TYPE_NUM, 0.0), "0"),
        (Value(TYPE_NUM, math.inf), "+Inf"),
        (Value(TYPE_NUM, -math.inf), "-Inf"),
        (Value(TYPE_NUM, math.nan), "NaN"),
        (Value(TYPE_BOOL, True), "true"),
        (Value(TYPE_BOOL, False), "false"),
        (Value(TYPE_STR, "as is\n"), "as is\n"),
    ],
)
def test_format_value(value, expected):
    assert format_value(value) == expected


def test_statements_yield_no_value():
    assert evaluate("x = 5") is None
    assert evaluate('print "hi"') is None
    assert evaluate("if 1 x = 2") is None
    assert evaluate("x = 5\nx * 2") == Value(TYPE_NUM, 10.0)
    assert evaluate("") is None


def test_unset_variables_read_as_zero():
    assert evaluate("x + 1") == Value(TYPE_NUM, 1.0)
    _, out = run("print nothing")
    assert out == "0"


def test_print_writes_without_trailing_newline():
    _, out = run('print "a\\tb"\nprint 1 + 1\nprint 3 > 2\nprint "\\n"')
    assert out == "a\tb2true\n"


def test_if_guard():
    _, out = run('x = 0\nif x print "no"\nif x == 0 print "yes"')
    assert out == "yes"


def test_if_with_text_condition_is_a_type_error():
    with pytest.raises(TypeMismatch):
        run('if "yes" print 1')


def test_left_evaluated_before_right():
    _, out = run("x = 1\nif x print x")
    assert out == "1"


def _fizzbuzz_expected(limit):
    parts = []
    for i in range(1, limit + 1):
        if i % 3 == 0:
            parts.append("fizz")
        if i % 5 == 0:
            parts.append("buzz")
        if i % 3 and i % 5:
            parts.append(str(i))
        parts.append("\n")
    return "".join(parts)


FIZZBUZZ = r"""i = 0
i = i + 1
if i % 3 == 0 print "fizz"
if i % 5 == 0 print "buzz"
if i % 3 & i % 5 print i
print "\n"
if i < 100 goto 2
"""


def test_goto_loop_matches_unrolled_fizzbuzz():
    result, out = run(FIZZBUZZ)
    assert out == _fizzbuzz_expected(100)
    assert result is None


def test_goto_skips_forward():
    _, out = run('goto 3\nprint "skipped"\nprint "ran"')
    assert out == "ran"


def test_goto_abandons_the_rest_of_the_program():
    _, out = run('x = 1\nif x == 1 goto 4\nprint "no"\nprint "yes"')
    assert out == "yes"


def test_goto_past_the_end_stops():
    _, out = run('print "a"\ngoto 10\nprint "b"')
    assert out == "a"


def test_goto_below_one_restarts():
    _, out = run("x = x + 1\nif x < 3 goto 0\nprint x")
    assert out == "3"


def test_goto_truncates_fractional_targets():
    _, out = run('goto 3.9\nprint "skipped"\nprint "ran"')
    assert out == "ran"


def test_goto_counts_statements_not_source_lines():
    source = "# header\ni = 0\n\ni = i + 1   # statement 2\nif i < 3 goto 2\nprint i\n"
    _, out = run(source)
    assert out == "3"


def test_goto_with_text_target_is_a_type_error():
    with pytest.raises(TypeMismatch):
        run('goto "start"')


@pytest.mark.parametrize(
    "source, rule",
    [
        ('"a" - 1', "SUB"),
        ('2 * "b"', "MUL"),
        ('"a" / "b"', "DIV"),
        ('"a" % 2', "MOD"),
        ("( 1 < 2 ) + 1", "ADD"),
        ("( 1 < 2 ) * 3", "MUL"),
        ('"a" < 1', "LT"),
        ('1 == "1"', "EQ"),
        ('"a" & 1', "AND"),
    ],
)
def test_type_mismatches_are_fatal(source, rule):
    with pytest.raises(TypeMismatch) as excinfo:
        run(source)
    assert excinfo.value.rule == rule


def test_modulo_by_zero():
    with pytest.raises(SimplRuntimeError, match="integer divide by zero") as excinfo:
        run("5 % 0")
    assert not isinstance(excinfo.value, TypeMismatch)


def test_runtime_error_aborts_immediately():
    out = []
    interpreter = Interpreter(source='print "a"\nx = "s" - 1\nprint "b"', filename="<test>", output_sink=out.append)
    with pytest.raises(TypeMismatch) as excinfo:
        interpreter.run()
    assert out == ["a"]
    error = excinfo.value
    assert error.location.line == 2
    assert error.location.statement == 'x = "s" - 1'
    assert error.step_index == 1


def test_lex_errors_abort_before_execution():
    out = []
    interpreter = Interpreter(source='print "a"\nx = $ + @', filename="prog.simpl", output_sink=out.append)
    with pytest.raises(SimplLexErrors) as excinfo:
        interpreter.run()
    assert len(excinfo.value.errors) == 2
    assert str(excinfo.value) == "there were 2 errors lexing 'prog.simpl'"
    assert out == []


def test_parse_errors_abort_before_execution():
    out = []
    interpreter = Interpreter(source='print "a"\n( 1', filename="<test>", output_sink=out.append)
    with pytest.raises(SimplParseError):
        interpreter.run()
    assert out == []


def test_unknown_node_class_is_fatal():
    program = Program(lines=[Node(Token(PAREN, "(", 1, 1))], filename="<test>", source_lines=["("])
    interpreter = Interpreter(source="", filename="<test>")
    with pytest.raises(SimplRuntimeError, match="cannot evaluate node of class PAREN"):
        interpreter.execute(program)


def test_unexpected_exceptions_are_wrapped():
    def broken_sink(text):
        raise ValueError("sink closed")

    interpreter = Interpreter(source="print 1", filename="<test>", output_sink=broken_sink)
    with pytest.raises(SimplRuntimeError, match="Internal interpreter error: sink closed") as excinfo:
        interpreter.run()
    assert excinfo.value.rule == "internal"


def test_reads_source_from_stream():
    interpreter = Interpreter(source=io.StringIO("1 + 1"), filename="<stream>")
    assert interpreter.run() == Value(TYPE_NUM, 2.0)


def test_environment_is_fresh_per_interpreter():
    first = Interpreter(source="x = 41", filename="<test>")
    first.run()
    assert first.env.get("x") == Value(TYPE_NUM, 41.0)
    second = Interpreter(source="x + 1", filename="<test>")
    assert second.run() == Value(TYPE_NUM, 1.0)


def test_shared_environment():
    env = Environment()
    Interpreter(source='greeting = "hi"', filename="<test>", env=env).run()
    assert env.has("greeting")
    result = Interpreter(source='greeting + "!"', filename="<test>", env=env).run()
    assert result == Value(TYPE_STR, "hi!")
    assert env.snapshot() == {"greeting": "STR:hi"}


def test_state_log_is_bounded():
    interpreter = Interpreter(source="i = i + 1\nif i < 50 goto 1", filename="<test>", history=5)
    interpreter.run()
    assert len(interpreter.logger.entries) == 5
    assert interpreter.logger.step_count > 100
    last = interpreter.logger.last_entry
    assert last.state_id == f"s_{last.step_index:06d}"


def test_state_log_records_jumps():
    interpreter = Interpreter(source="i = i + 1\nif i < 2 goto 1", filename="<test>")
    interpreter.run()
    rules = [entry.rewrite_record["rule"] for entry in interpreter.logger.entries]
    assert rules == ["ASSIGN", "KEYWORD", "JUMP", "ASSIGN", "KEYWORD"]


def test_traceback_text_and_json():
    interpreter = Interpreter(source='x = 1\ny = x - "a"', filename="prog.simpl", verbose=True, output_sink=lambda _: None)
    with pytest.raises(TypeMismatch) as excinfo:
        interpreter.run()
    formatter = TracebackFormatter(interpreter)
    text = formatter.format_text(excinfo.value, verbose=True)
    assert text.splitlines()[0] == "Traceback (most recent call last):"
    assert 'File "prog.simpl", line 2, in <top-level>' in text
    assert '    y = x - "a"' in text
    assert "Env snapshot: x=NUM:1" in text
    assert text.splitlines()[-1].startswith("TypeMismatch: SUB expects NUM operands")
    assert text.endswith("(rule: SUB)")

    data = json.loads(formatter.to_json(excinfo.value))
    assert data["error"]["type"] == "TypeMismatch"
    assert data["error"]["failing_step_index"] == 1
    frame = data["traceback"][0]
    assert frame["source_location"]["line"] == 2
    assert frame["env_snapshot"] == {"x": "NUM:1"}


def test_long_expression_chain_evaluates():
    terms = 2000
    _, out = run("x = " + " + ".join(["1"] * terms) + "\nprint x")
    assert out == "2000"


def test_long_chain_is_right_nested_when_evaluated():
    # 10 - (1 - (1 - 1)) rather than ((10 - 1) - 1) - 1
    assert evaluate("10 - 1 - 1 - 1") == Value(TYPE_NUM, 9.0)
    assert evaluate("1 - " * 1001 + "1") == Value(TYPE_NUM, 0.0)


def test_long_if_chain_evaluates():
    _, out = run("if 1 " * 1500 + 'print "deep"')
    assert out == "deep"


def test_location_ignores_form_feed_in_strings():
    interpreter = Interpreter(source='print "a\x0cb"\nx = "s" - 1', filename="<test>", output_sink=lambda _: None)
    with pytest.raises(TypeMismatch) as excinfo:
        interpreter.run()
    location = excinfo.value.location
    assert (location.line, location.statement) == (2, 'x = "s" - 1')


def test_values_are_immutable():
    with pytest.raises(dataclasses.FrozenInstanceError):
        ZERO.value = 5.0
    env = Environment()
    assert env.get("unset") is ZERO
    assert ZERO == Value(TYPE_NUM, 0.0)


def test_escaped_quotes_print_with_their_quotes():
    _, out = run(r'print \"hi\"')
    assert out == '"hi"'
