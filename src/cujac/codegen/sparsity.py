"""Jacobian sparsity patterns, column partitioning and lookup emission.

Published Classes
-----------------
:class:`SparsityPattern`
    Parallel row/column index arrays describing nonzero Jacobian entries.

Published Functions
-------------------
:func:`partition_columns`
    Group the rows of a pattern by column.
:func:`sparsity_lookup_source`
    Emit a device function returning the rows of one column.
:func:`sparsity_2d_source`
    Emit a device function returning the flat row/column arrays.
"""

from typing import Dict, Iterator, List, Tuple

import attrs
import numpy as np


def _as_index_array(value) -> np.ndarray:
    array = np.array(value, dtype=np.int64).reshape(-1)
    array.setflags(write=False)
    return array


@attrs.define(frozen=True, eq=False)
class SparsityPattern:
    """Nonzero entries of a Jacobian as parallel index arrays.

    Attributes
    ----------
    rows : numpy.ndarray
        Output (row) index of every entry.
    cols : numpy.ndarray
        Input (column) index of every entry.

    Notes
    -----
    Entries keep the order they were supplied in; generated code associates
    each entry with its position, so the order is significant. Duplicate
    ``(row, col)`` pairs are rejected.
    """

    rows: np.ndarray = attrs.field(converter=_as_index_array)
    cols: np.ndarray = attrs.field(converter=_as_index_array)

    def __attrs_post_init__(self):
        if self.rows.shape != self.cols.shape:
            raise ValueError(
                f"rows and cols must have equal length, got "
                f"{self.rows.size} and {self.cols.size}"
            )
        if self.rows.size and (self.rows.min() < 0 or self.cols.min() < 0):
            raise ValueError("Sparsity indices must be non-negative")
        if len(set(zip(self.rows.tolist(), self.cols.tolist()))) != len(self):
            raise ValueError("Sparsity pattern contains duplicate entries")

    @classmethod
    def from_entries(cls, entries) -> "SparsityPattern":
        """Build a pattern from an iterable of ``(row, col)`` pairs."""
        entries = list(entries)
        rows = [row for row, _ in entries]
        cols = [col for _, col in entries]
        return cls(rows, cols)

    def __len__(self) -> int:
        return int(self.rows.size)

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        return zip(self.rows.tolist(), self.cols.tolist())

    def __eq__(self, other):
        if not isinstance(other, SparsityPattern):
            return NotImplemented
        return (np.array_equal(self.rows, other.rows)
                and np.array_equal(self.cols, other.cols))

    def __hash__(self):
        return hash((self.rows.tobytes(), self.cols.tobytes()))


def partition_columns(pattern: SparsityPattern) -> Dict[int, List[int]]:
    """Map every column of ``pattern`` to its rows.

    Parameters
    ----------
    pattern
        Jacobian sparsity pattern.

    Returns
    -------
    dict[int, list[int]]
        Columns in ascending order. Each row list keeps pattern order.
    """
    elements: Dict[int, List[int]] = {}
    for row, col in pattern:
        elements.setdefault(col, []).append(row)
    return {col: elements[col] for col in sorted(elements)}


def column_positions(
    elements: Dict[int, List[int]],
) -> Dict[int, Dict[int, int]]:
    """Return, per column, the offset of each row within that column."""
    return {
        col: {row: e for e, row in enumerate(rows)}
        for col, rows in elements.items()
    }


def _index_array_literal(values) -> str:
    return "{" + ", ".join(str(v) for v in values) + "}"


def sparsity_lookup_source(
    function_name: str,
    elements: Dict[int, List[int]],
) -> str:
    """Emit a device function returning the rows of one column.

    The generated function has the signature
    ``void f(unsigned long pos, unsigned long const** elements,
    unsigned long* nnz)``. Unknown columns yield a null pointer and a zero
    count.
    """
    lines = [
        f"void {function_name}(unsigned long pos,",
        f"{' ' * (len(function_name) + 6)}unsigned long const** elements,",
        f"{' ' * (len(function_name) + 6)}unsigned long* nnz) {{",
    ]
    for col, rows in elements.items():
        lines.append(
            f"  static unsigned long const elements{col}[{len(rows)}] = "
            f"{_index_array_literal(rows)};"
        )
    lines.append("  switch(pos) {")
    for col, rows in elements.items():
        lines.append(f"    case {col}:")
        lines.append(f"      *elements = elements{col};")
        lines.append(f"      *nnz = {len(rows)};")
        lines.append("      break;")
    lines.append("    default:")
    lines.append("      *elements = 0;")
    lines.append("      *nnz = 0;")
    lines.append("      break;")
    lines.append("  };")
    lines.append("}")
    return "\n".join(lines) + "\n"


def sparsity_2d_source(function_name: str, pattern: SparsityPattern) -> str:
    """Emit a device function returning the flat row/column arrays."""
    nnz = len(pattern)
    size = max(nnz, 1)
    rows = pattern.rows.tolist() if nnz else [0]
    cols = pattern.cols.tolist() if nnz else [0]
    return (
        "__device__\n"
        f"void {function_name}(unsigned long const** row,\n"
        f"{' ' * (len(function_name) + 6)}unsigned long const** col,\n"
        f"{' ' * (len(function_name) + 6)}unsigned long* nnz) {{\n"
        f"  static unsigned long const rows[{size}] = "
        f"{_index_array_literal(rows)};\n"
        f"  static unsigned long const cols[{size}] = "
        f"{_index_array_literal(cols)};\n"
        "  *row = rows;\n"
        "  *col = cols;\n"
        f"  *nnz = {nnz};\n"
        "}\n"
    )
