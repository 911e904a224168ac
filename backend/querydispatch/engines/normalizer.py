"""
Result normalizer: native connector output -> uniform tabular rows.

- Columnar results (SQL cursors) keep the declared column order.
- Row-oriented results (documents, JSON) take their order from the first row;
  keys first seen in later rows are appended, never dropped.
- Every output row has exactly the output columns; gaps are filled with None.
"""

from collections.abc import Mapping, Sequence
from typing import Any, NamedTuple

NULL: Any = None


class NativeResult(NamedTuple):
    """
    Raw connector output before normalization.

    ``columns`` set -> columnar (rows are sequences in column order).
    ``columns`` None -> row-oriented (rows are mappings).
    """

    rows: Sequence[Any]
    columns: Sequence[str] | None = None


class NormalizedResult(NamedTuple):
    data: list[dict[str, Any]]
    columns: list[str]
    row_count: int


def _dedupe_columns(names: list[str]) -> list[str]:
    """``SELECT a.id, b.id`` -> ["id", "id_2"]."""
    seen: dict[str, int] = {}
    taken = set(names)
    out: list[str] = []
    for name in names:
        if name not in seen:
            seen[name] = 1
            out.append(name)
            continue
        n = seen[name]
        candidate = name
        while candidate in taken:
            n += 1
            candidate = f"{name}_{n}"
        seen[name] = n
        taken.add(candidate)
        out.append(candidate)
    return out


def _normalize_columnar(columns: list[str], rows: list[Any]) -> NormalizedResult:
    cols = _dedupe_columns([str(c) for c in columns])
    width = len(cols)
    data: list[dict[str, Any]] = []
    for row in rows:
        values = list(row)
        if len(values) < width:
            values.extend([NULL] * (width - len(values)))
        data.append(dict(zip(cols, values[:width])))
    return NormalizedResult(data=data, columns=cols, row_count=len(data))


def _normalize_rows(rows: list[Any]) -> NormalizedResult:
    columns: list[str] = []
    known: set[str] = set()
    records: list[dict[str, Any]] = []
    for row in rows:
        if isinstance(row, Mapping):
            record = {str(k): v for k, v in row.items()}
        else:
            record = {"value": row}
        for key in record:
            if key not in known:
                known.add(key)
                columns.append(key)
        records.append(record)
    data = [{c: record.get(c, NULL) for c in columns} for record in records]
    return NormalizedResult(data=data, columns=columns, row_count=len(data))


def normalize(native: NativeResult) -> NormalizedResult:
    """Convert a connector's NativeResult into data/columns/row_count."""
    rows = list(native.rows or [])
    if native.columns is not None:
        return _normalize_columnar(list(native.columns), rows)
    return _normalize_rows(rows)


def flatten_document(doc: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """
    Flatten nested mappings to dotted names: {"a": {"b": 1}} -> {"a.b": 1}.

    Lists are kept as values. An empty nested mapping is kept under its own
    name so the field is not lost.
    """
    out: dict[str, Any] = {}
    for key, value in doc.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and value:
            out.update(flatten_document(value, name))
        else:
            out[name] = value
    return out
