"""simpl entry point and REPL wiring."""

from __future__ import annotations
import argparse
import os
import sys
from typing import List, Optional, Tuple

from interpreter import Environment, Interpreter, SimplRuntimeError, TracebackFormatter, format_value
from lexer import SimplError, SimplLexErrors, SimplParseError


def _color(text: str) -> str:
    if sys.stdout.isatty():
        return f"\x1b[38;2;153;221;255m{text}\033[0m"  # light blue
    return text


def _report(error: SimplError, interpreter: Interpreter, verbose: bool, as_json: bool = False) -> None:
    """Write a lex, parse or runtime failure to stderr."""
    if isinstance(error, SimplLexErrors):
        for item in error.errors:
            print(f"LexError: {item}", file=sys.stderr)
        print(str(error), file=sys.stderr)
    elif isinstance(error, SimplRuntimeError):
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
        if as_json:
            print(formatter.to_json(error), file=sys.stderr)
    else:
        print(f"ParseError: {error}", file=sys.stderr)


def run_repl(verbose: bool) -> int:
    """Read statements line by line against one environment until ``:q``."""
    print(f"{_color('simpl')} REPL. Enter statements, :q to quit.")
    env = Environment()
    open_line = False

    def _write(text: str) -> None:
        nonlocal open_line
        sys.stdout.write(text)
        if text:
            open_line = not text.endswith("\n")

    while True:
        try:
            line = input(_color(">>>") + " ").strip()
        except EOFError:
            print()
            return 0
        if line == ":q":
            return 0
        if not line:
            continue

        interpreter = Interpreter(source=line, filename="<repl>", verbose=verbose, output_sink=_write, env=env)
        try:
            result = interpreter.run()
        except (SimplLexErrors, SimplParseError, SimplRuntimeError) as error:
            result = None
            failure: Optional[SimplError] = error
        else:
            failure = None
        if open_line:
            print()
            open_line = False
        if result is not None:
            print(format_value(result))
        if failure is not None:
            _report(failure, interpreter, verbose)


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="simpl", description="Run a simpl program, or start a REPL without one.")
    parser.add_argument("program", nargs="?", help="program file, or program text with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="treat PROGRAM as source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="include variable snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="also write the traceback as JSON")
    parser.add_argument("--dump-ast", action="store_true", help="print each parsed statement instead of running")
    return parser


def _load_program(path: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(text, problem)``; exactly one of them is None."""
    if os.path.isdir(path):
        return None, f"'{path}' is a directory"
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return handle.read(), None
    except OSError as exc:
        return None, f"Failed to read {path}: {exc}"


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose)

    if args.source_mode:
        filename, text = "<string>", args.program
    else:
        filename = args.program
        text, problem = _load_program(filename)
        if problem is not None:
            print(problem, file=sys.stderr)
            return 1

    interpreter = Interpreter(source=text, filename=filename, verbose=args.verbose)
    try:
        program = interpreter.parse()
        if args.dump_ast:
            for number, node in enumerate(program.lines, start=1):
                print(f"{number}: {node.render()}")
        else:
            interpreter.execute(program)
    except (SimplLexErrors, SimplParseError, SimplRuntimeError) as error:
        _report(error, interpreter, args.verbose, as_json=args.traceback_json)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
