"""Best-effort parsing of Python tracebacks captured from sandbox runs."""

import re
from dataclasses import dataclass

_FRAME = re.compile(r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+)', re.MULTILINE)
_EXCEPTION_LINE = re.compile(r"^(?P<type>[A-Za-z_][\w.]*(?:Error|Exception|Exit|Interrupt|Warning|Iteration)\w*)(?::\s?(?P<message>.*))?$")
_CARET = re.compile(r"^\s*[~^]*\^[~^]*\s*$")


@dataclass
class ParsedError:
    """Normalized view of a runtime error.

    Attributes:
        message: The final ``ExceptionType: message`` line (or first line of
            plain text)
        file: Innermost workspace file mentioned by the traceback
        line: Line number in ``file``
        column: Column from a SyntaxError caret, when present
        raw: The original text
    """

    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    raw: str = ""


def parse_error(text: str | None) -> ParsedError:
    """Parse traceback text into a ParsedError.

    Examples:
        >>> parse_error('Traceback ...\\n  File "main.py", line 3, in <module>\\nTypeError: x').line
        3
        >>> parse_error("Timeout after 2500ms").message
        'Timeout after 2500ms'
    """
    raw = text or ""
    lines = [line for line in raw.splitlines() if line.strip()]
    if not lines:
        return ParsedError(message="Error", raw=raw)

    message = lines[0].strip()
    top_level = [line for line in lines if not line[0].isspace()]
    if lines[0].startswith("Traceback") and len(top_level) > 1:
        # The exception line is the last unindented one
        message = top_level[-1].strip()
    else:
        for candidate in reversed(top_level):
            if _EXCEPTION_LINE.match(candidate.strip()):
                message = candidate.strip()
                break

    parsed = ParsedError(message=message, raw=raw)

    frames = list(_FRAME.finditer(raw))
    if frames:
        innermost = frames[-1]
        parsed.file = innermost.group("file")
        parsed.line = int(innermost.group("line"))

    for index in range(len(lines) - 1, 0, -1):
        if _CARET.match(lines[index]):
            source_line = lines[index - 1]
            source_indent = len(source_line) - len(source_line.lstrip())
            parsed.column = lines[index].index("^") - source_indent + 1
            break

    return parsed


def normalize_error_message(text: str | None) -> str:
    """Reduce an error to the form compared between fix iterations.

    Whitespace is collapsed; empty input normalizes to an empty string.
    """
    if not text or not text.strip():
        return ""
    return " ".join(parse_error(text).message.split())
