from __future__ import annotations

import json
from typing import Any, Iterable, Sequence


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    """Left-aligned plain-text table with a dashed rule under the header."""
    table = [list(headers), *[list(r) for r in rows]]
    widths = [max(len(row[i]) for row in table if i < len(row)) for i in range(len(headers))]

    def fmt_row(cols: Sequence[str]) -> str:
        cells = [c.ljust(widths[i]) if i < len(widths) else c for i, c in enumerate(cols)]
        return "  ".join(cells).rstrip()

    lines = [fmt_row(table[0]), fmt_row(["-" * w for w in widths])]
    lines.extend(fmt_row(r) for r in table[1:])
    return "\n".join(lines)
