"""
Helpers for making kernel-reported errors readable: strip the ANSI colouring IPython puts in
tracebacks, classify the exception, and suggest a fix for the common ones.
"""
import re
from typing import List, Optional

from pydantic import BaseModel, Field

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

ERROR_CATEGORIES = {
    "syntax": ("SyntaxError", "IndentationError", "TabError"),
    "import": ("ImportError", "ModuleNotFoundError"),
    "runtime": (
        "NameError",
        "TypeError",
        "ValueError",
        "AttributeError",
        "KeyError",
        "IndexError",
        "ZeroDivisionError",
    ),
    "interrupt": ("KeyboardInterrupt",),
    "timeout": ("TimeoutError",),
}

ERROR_HINTS = {
    "NameError": "Check if the variable is defined and spelled correctly",
    "ModuleNotFoundError": "Install the missing module using: pip install <module_name>",
    "SyntaxError": "Check your code syntax, brackets, and indentation",
    "IndentationError": "Fix indentation - use consistent spaces or tabs",
    "TypeError": "Check the data types being used in your operation",
    "ValueError": "Check if the value is appropriate for the operation",
    "ImportError": "Check if the module exists and is properly installed",
    "AttributeError": "Check if the object has the attribute you're trying to access",
    "KeyError": "Check if the key exists in the dictionary",
    "IndexError": "Check if the index is within the valid range",
    "ZeroDivisionError": "Cannot divide by zero - check your calculation",
}

LINE_NUMBER = re.compile(r"line (\d+)", re.IGNORECASE)


class ErrorSummary(BaseModel):
    category: str = "unknown"
    title: str
    message: str
    traceback: List[str] = Field(default_factory=list)
    line_number: Optional[int] = None
    hint: Optional[str] = None


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def clean_traceback(traceback: List[str]) -> List[str]:
    """IPython sends one (multi-line, coloured) string per frame. Flatten to plain lines."""
    lines = []
    for frame in traceback:
        for line in strip_ansi(frame).splitlines():
            if line.strip():
                lines.append(line.rstrip())
    return lines


def categorize(ename: str) -> str:
    for category, names in ERROR_CATEGORIES.items():
        if ename in names:
            return category
    return "unknown"


def describe_error(ename: str, evalue: str, traceback: Optional[List[str]] = None) -> ErrorSummary:
    lines = clean_traceback(traceback or [])
    line_number = None
    # Innermost frame wins, IPython lists the user's cell last
    for line in reversed(lines):
        match = LINE_NUMBER.search(line)
        if match:
            line_number = int(match.group(1))
            break
    category = categorize(ename)
    return ErrorSummary(
        category=category,
        title=ename or "Execution Error",
        message=strip_ansi(evalue) or ename,
        traceback=lines,
        line_number=line_number,
        hint=ERROR_HINTS.get(ename),
    )
