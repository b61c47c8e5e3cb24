import json
import re
from typing import Any, Iterator, List, Union

BOOL_TRUE = ("true", "yes", "on", "1")
BOOL_FALSE = ("false", "no", "off", "0")

# Memory values such as "16.GB", "512 MB", "8g" or a bare number of gigabytes.
MEMORY_PATTERN = re.compile(r"^\s*(?P<value>\d+(\.\d+)?)\s*\.?\s*(?P<unit>[kmgt]?b?)?\s*$", re.I)
MEMORY_UNITS = {"": 1.0, "k": 1 / 1024**2, "m": 1 / 1024, "g": 1.0, "t": 1024.0}


def str2bool(text: Union[str, bool]) -> bool:
    """
    Parse a string into a bool.
    """
    if isinstance(text, bool):
        return text
    text = text.strip().lower()
    if text in BOOL_TRUE:
        return True
    elif text in BOOL_FALSE:
        return False
    else:
        raise ValueError(f"Cannot parse bool: '{text}'")


def parse_memory(text: Union[str, int, float]) -> float:
    """
    Parse a memory amount into gigabytes.
    """
    if isinstance(text, (int, float)):
        return float(text)
    match = MEMORY_PATTERN.match(text)
    if not match:
        raise ValueError(f"Cannot parse memory: '{text}'")
    unit = (match.group("unit") or "").lower().rstrip("b")
    return float(match.group("value")) * MEMORY_UNITS[unit]


def json_dumps(value: Any) -> str:
    """
    Convert JSON-like values into a normalized string.

    Keys are sorted and no whitespace is used around delimiters.
    """
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def trim_string(text: str, max_length: int = 200, ellipsis: str = "...") -> str:
    """
    If text is longer than max_length then return a trimmed string.
    """
    assert max_length >= len(ellipsis)
    if len(text) > max_length:
        return text[: max_length - len(ellipsis)] + ellipsis
    else:
        return text


def format_table(table: List[List], justs: str, min_width: int = 0) -> Iterator[str]:
    """
    Format table with justified columns.
    """
    assert len(justs) == len(table[0])

    # Convert to strings.
    table = [[str(cell) for cell in row] for row in table]

    column_widths = [
        max(max(len(table[i][j]) for i in range(len(table))), min_width)
        for j in range(len(table[0]))
    ]

    def justify(text, just, width):
        if just == "l":
            return text.ljust(width)
        elif just == "r":
            return text.rjust(width)
        raise NotImplementedError(just)

    for i, row in enumerate(table):
        if i == 1:
            yield ""
        yield " ".join(
            justify(cell, just, width) for cell, just, width in zip(row, justs, column_widths)
        )
