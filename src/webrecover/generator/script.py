"""Compile generated `page.<op>(...)` scripts into typed commands.

Generators usually answer with short Playwright-style snippets such as:

    await page.waitForSelector('#submit', { timeout: 5000 });
    await page.locator('#submit').click();

compile_script() turns each statement into a SolutionCommand. Only calls on
`page` are accepted, every argument must be a literal, and a chain may be
at most one locator call followed by one action. Anything else raises
SolutionParseError, so a script is either fully interpretable or rejected.
"""

from __future__ import annotations

import json
import re
from typing import Any

from ..errors import SolutionParseError
from .models import CommandOp, SolutionCommand

LOCATOR_OPS = {"locator", "get_by_role", "get_by_label", "get_by_text"}

# Playwright spellings that map onto a CommandOp
OP_ALIASES = {
    "scroll_into_view_if_needed": "scroll_into_view",
    "dbl_click": "dblclick",
    "select": "select_option",
}

SELECTOR_OPS = {
    CommandOp.CLICK,
    CommandOp.DBLCLICK,
    CommandOp.FILL,
    CommandOp.TYPE,
    CommandOp.PRESS,
    CommandOp.SELECT_OPTION,
    CommandOp.CHECK,
    CommandOp.UNCHECK,
    CommandOp.CLEAR,
    CommandOp.HOVER,
    CommandOp.FOCUS,
    CommandOp.BLUR,
    CommandOp.SCROLL_INTO_VIEW,
    CommandOp.WAIT_FOR_SELECTOR,
    CommandOp.GET_ATTRIBUTE,
    CommandOp.TEXT_CONTENT,
    CommandOp.INNER_HTML,
    CommandOp.LOCATOR,
    CommandOp.GET_BY_ROLE,
    CommandOp.GET_BY_LABEL,
    CommandOp.GET_BY_TEXT,
}

CALL_RE = re.compile(r"\s*\.\s*([A-Za-z_$][\w$]*)\s*\(")
NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
IDENT_RE = re.compile(r"^[A-Za-z_$][\w$]*$")

ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "`": "`"}


def to_snake(name: str) -> str:
    """Normalize a camelCase method name: waitForSelector -> wait_for_selector."""
    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name).lower()
    return OP_ALIASES.get(snake, snake)


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


# =============================================================================
# Lexing
# =============================================================================


def _scan(text: str, stop: str, start: int = 0) -> list[tuple[int, str]]:
    """Find top-level occurrences of characters in `stop`.

    Quoted strings and bracket nesting are respected.
    """
    hits: list[tuple[int, str]] = []
    quote: str | None = None
    depth = 0
    i = start
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in "'\"`":
            quote = ch
        elif ch in "([{":
            depth += 1
        elif ch in ")]}":
            if depth == 0 and ch in stop:
                hits.append((i, ch))
                return hits
            depth -= 1
        elif depth == 0 and ch in stop:
            hits.append((i, ch))
        i += 1

    if quote:
        raise SolutionParseError("Unterminated string literal")
    return hits


def _split(text: str, separators: str) -> list[str]:
    parts = []
    last = 0
    for index, _ in _scan(text, separators):
        parts.append(text[last:index])
        last = index + 1
    parts.append(text[last:])
    return [p.strip() for p in parts if p.strip()]


def strip_comments(code: str) -> str:
    """Remove `//` line comments outside string literals."""
    out = []
    quote: str | None = None
    i = 0
    while i < len(code):
        ch = code[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(code):
                out.append(code[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in "'\"`":
            quote = ch
            out.append(ch)
        elif code.startswith("//", i):
            end = code.find("\n", i)
            i = len(code) if end == -1 else end
            continue
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def split_statements(code: str) -> list[str]:
    """Split a script into statements on top-level `;` and newlines."""
    return _split(strip_comments(code), ";\n")


def _unquote(token: str) -> str:
    quote, body = token[0], token[1:-1]
    if quote == "`" and "${" in body:
        raise SolutionParseError(f"Template interpolation is not allowed: {token}")

    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            code_point = body[i + 2 : i + 6]
            if body[i + 1] == "u" and len(code_point) == 4:
                try:
                    out.append(chr(int(code_point, 16)))
                    i += 6
                    continue
                except ValueError:
                    pass
            out.append(ESCAPES.get(body[i + 1], body[i + 1]))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def parse_literal(token: str) -> Any:
    """Parse a JS literal: string, number, boolean, null or flat object."""
    token = token.strip()
    if len(token) >= 2 and token[0] in "'\"`" and token[-1] == token[0]:
        return _unquote(token)
    if NUMBER_RE.match(token):
        return float(token) if "." in token else int(token)
    if token in ("true", "false"):
        return token == "true"
    if token in ("null", "undefined"):
        return None
    if token.startswith("{") and token.endswith("}"):
        result: dict[str, Any] = {}
        for entry in _split(token[1:-1], ","):
            key_hits = _scan(entry, ":")
            if not key_hits:
                raise SolutionParseError(f"Invalid object entry: {entry}")
            colon = key_hits[0][0]
            key = entry[:colon].strip()
            if key and key[0] in "'\"":
                key = _unquote(key)
            elif not IDENT_RE.match(key):
                raise SolutionParseError(f"Invalid object key: {key}")
            result[key] = parse_literal(entry[colon + 1 :])
        return result
    raise SolutionParseError(f"Non-literal argument: {token}")


def _parse_chain(text: str) -> list[tuple[str, list[Any]]]:
    calls = []
    pos = 0
    while pos < len(text):
        match = CALL_RE.match(text, pos)
        if not match:
            raise SolutionParseError(f"Unsupported expression: page{text}")
        name = match.group(1)
        open_at = match.end()
        closing = _scan(text, ")", open_at)
        if not closing or closing[-1][1] != ")":
            raise SolutionParseError(f"Unbalanced call: {name}")
        close_at = closing[-1][0]
        args = [parse_literal(a) for a in _split(text[open_at:close_at], ",")]
        calls.append((to_snake(name), args))
        pos = close_at + 1
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return calls


# =============================================================================
# Compilation
# =============================================================================


def _locator_selector(name: str, args: list[Any]) -> str:
    if not args or not isinstance(args[0], str):
        raise SolutionParseError(f"{name} requires a string argument")
    target = args[0]
    if name == "get_by_text":
        return f"text={target}"
    if name == "get_by_label":
        return f'[aria-label="{target}"]'
    if name == "get_by_role":
        options = args[1] if len(args) > 1 and isinstance(args[1], dict) else {}
        if options.get("name"):
            return f'role={target}[name="{options["name"]}"]'
        return f"role={target}"
    return target


def _build(name: str, selector: str | None, args: list[Any]) -> SolutionCommand:
    try:
        op = CommandOp(name)
    except ValueError:
        raise SolutionParseError(f"Unsupported operation: {name}") from None

    args = list(args)
    options: dict[str, Any] = {}
    if args and isinstance(args[-1], dict):
        options = args.pop()

    fields: dict[str, Any] = {"op": op}

    if op in SELECTOR_OPS:
        if selector is None:
            if not args or not isinstance(args[0], str):
                raise SolutionParseError(f"{name} requires a selector")
            selector = args.pop(0)
        fields["selector"] = selector

    def positional(field_name: str) -> None:
        if not args or isinstance(args[0], (dict, list)) or args[0] is None:
            raise SolutionParseError(f"{name} requires a {field_name}")
        value = args.pop(0)
        fields[field_name] = value if field_name == "timeout_ms" else str(value)

    if op in (CommandOp.FILL, CommandOp.TYPE, CommandOp.SELECT_OPTION):
        positional("value")
    elif op == CommandOp.PRESS:
        positional("key")
    elif op == CommandOp.GET_ATTRIBUTE:
        positional("attribute")
    elif op == CommandOp.WAIT_FOR_TIMEOUT:
        positional("timeout_ms")
        if not isinstance(fields["timeout_ms"], (int, float)):
            raise SolutionParseError("wait_for_timeout requires a number")
        fields["timeout_ms"] = int(fields["timeout_ms"])
    elif op == CommandOp.WAIT_FOR_LOAD_STATE:
        if args and isinstance(args[0], str):
            fields["state"] = args.pop(0)
    elif op == CommandOp.GOTO:
        positional("url")

    if args:
        raise SolutionParseError(f"Unexpected arguments for {name}: {args}")

    if isinstance(options.get("timeout"), (int, float)):
        fields["timeout_ms"] = int(options["timeout"])
    if isinstance(options.get("state"), str):
        fields["state"] = options["state"]
    if options.get("force") is True:
        fields["force"] = True
    if op == CommandOp.SCREENSHOT and isinstance(options.get("path"), str):
        fields["value"] = options["path"]

    return SolutionCommand(**fields)


def compile_statement(statement: str) -> SolutionCommand:
    """Compile one `await page.<op>(...)` statement."""
    text = statement.strip()
    if text.startswith("await "):
        text = text[len("await ") :].lstrip()
    if not text.startswith("page"):
        raise SolutionParseError(f"Unsupported statement: {statement}")

    calls = _parse_chain(text[len("page") :])
    if not calls:
        raise SolutionParseError(f"Unsupported statement: {statement}")

    if len(calls) == 1:
        name, args = calls[0]
        if name in LOCATOR_OPS:
            return SolutionCommand(op=CommandOp(name), selector=_locator_selector(name, args))
        return _build(name, None, args)

    if len(calls) == 2 and calls[0][0] in LOCATOR_OPS:
        (locator_name, locator_args), (name, args) = calls
        return _build(name, _locator_selector(locator_name, locator_args), args)

    raise SolutionParseError(f"Unsupported call chain: {statement}")


def compile_script(code: str) -> list[SolutionCommand]:
    """Compile a whole script.

    Raises:
        SolutionParseError: On the first statement that cannot be compiled,
            or when the script has no statements.
    """
    statements = split_statements(code)
    if not statements:
        raise SolutionParseError("Script contains no statements")
    return [compile_statement(s) for s in statements]


# =============================================================================
# Rendering
# =============================================================================


def _js(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def render_command(command: SolutionCommand) -> str:
    """Render a command as a canonical statement.

    Locator-style commands render as `page.locator(<resolved selector>)`.
    """
    op = command.op
    name = "locator" if op in (CommandOp.GET_BY_ROLE, CommandOp.GET_BY_LABEL, CommandOp.GET_BY_TEXT) else op.value

    args: list[str] = []
    if command.selector is not None and op in SELECTOR_OPS:
        args.append(_js(command.selector))

    if op in (CommandOp.FILL, CommandOp.TYPE, CommandOp.SELECT_OPTION):
        args.append(_js(command.value or ""))
    elif op == CommandOp.PRESS:
        args.append(_js(command.key or ""))
    elif op == CommandOp.GET_ATTRIBUTE:
        args.append(_js(command.attribute or ""))
    elif op == CommandOp.WAIT_FOR_TIMEOUT:
        args.append(_js(command.timeout_ms or 0))
    elif op == CommandOp.WAIT_FOR_LOAD_STATE and command.state:
        args.append(_js(command.state))
    elif op == CommandOp.GOTO:
        args.append(_js(command.url or ""))

    options: dict[str, Any] = {}
    if command.timeout_ms is not None and op != CommandOp.WAIT_FOR_TIMEOUT:
        options["timeout"] = command.timeout_ms
    if command.state and op == CommandOp.WAIT_FOR_SELECTOR:
        options["state"] = command.state
    if command.force:
        options["force"] = True
    if op == CommandOp.SCREENSHOT and command.value:
        options["path"] = command.value
    if options:
        args.append("{ " + ", ".join(f"{k}: {_js(v)}" for k, v in options.items()) + " }")

    return f"await page.{to_camel(name)}({', '.join(args)});"


def render_script(commands: list[SolutionCommand]) -> str:
    return "\n".join(render_command(c) for c in commands)
