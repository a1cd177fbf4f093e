import numpy as np
import pytest

from cujac.codegen.sparsity import (
    SparsityPattern,
    column_positions,
    partition_columns,
    sparsity_2d_source,
    sparsity_lookup_source,
)


class TestSparsityPattern:
    def test_from_entries(self):
        pattern = SparsityPattern.from_entries([(0, 0), (1, 0), (1, 2)])
        assert pattern.rows.tolist() == [0, 1, 1]
        assert pattern.cols.tolist() == [0, 0, 2]
        assert len(pattern) == 3
        assert list(pattern) == [(0, 0), (1, 0), (1, 2)]

    def test_read_only(self):
        pattern = SparsityPattern([0], [1])
        with pytest.raises(ValueError):
            pattern.rows[0] = 3

    def test_unequal_lengths(self):
        with pytest.raises(ValueError, match="equal length"):
            SparsityPattern([0, 1], [0])

    def test_negative_index(self):
        with pytest.raises(ValueError, match="non-negative"):
            SparsityPattern([0, -1], [0, 0])

    def test_duplicates_rejected(self):
        with pytest.raises(ValueError, match="duplicate"):
            SparsityPattern.from_entries([(0, 1), (0, 1)])

    def test_equality_and_hash(self):
        a = SparsityPattern([0, 1], [1, 0])
        b = SparsityPattern.from_entries([(0, 1), (1, 0)])
        c = SparsityPattern.from_entries([(1, 0), (0, 1)])
        assert a == b
        assert hash(a) == hash(b)
        assert a != c

    def test_empty(self):
        pattern = SparsityPattern.from_entries([])
        assert len(pattern) == 0
        assert list(pattern) == []


class TestPartitionColumns:
    def test_two_columns(self):
        pattern = SparsityPattern.from_entries([(0, 0), (1, 0), (1, 2)])
        assert partition_columns(pattern) == {0: [0, 1], 2: [1]}

    def test_rows_keep_pattern_order(self):
        pattern = SparsityPattern.from_entries([(3, 1), (0, 1), (2, 0)])
        elements = partition_columns(pattern)
        assert list(elements) == [0, 1]
        assert elements[1] == [3, 0]

    def test_empty_pattern(self):
        assert partition_columns(SparsityPattern.from_entries([])) == {}

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_cardinality_preserved(self, seed):
        rng = np.random.default_rng(seed)
        dense = rng.random((7, 9)) < 0.3
        entries = [tuple(e) for e in np.argwhere(dense).tolist()]
        rng.shuffle(entries)
        pattern = SparsityPattern.from_entries(entries)

        elements = partition_columns(pattern)

        assert set(elements) == set(pattern.cols.tolist())
        for col, rows in elements.items():
            assert len(rows) == int(np.sum(pattern.cols == col))
            assert sorted(rows) == np.flatnonzero(dense[:, col]).tolist()


def test_column_positions():
    positions = column_positions({0: [4, 1], 3: [2]})
    assert positions == {0: {4: 0, 1: 1}, 3: {2: 0}}


def test_sparsity_lookup_source():
    code = sparsity_lookup_source("m_sparsity", {0: [0, 1], 2: [1]})
    lines = code.splitlines()
    assert lines[0] == "void m_sparsity(unsigned long pos,"
    assert "  static unsigned long const elements0[2] = {0, 1};" in lines
    assert "  static unsigned long const elements2[1] = {1};" in lines
    case = lines.index("    case 2:")
    assert lines[case + 1:case + 4] == [
        "      *elements = elements2;",
        "      *nnz = 1;",
        "      break;",
    ]
    default = lines.index("    default:")
    assert lines[default + 1:default + 3] == ["      *elements = 0;",
                                              "      *nnz = 0;"]
    assert code.endswith("  };\n}\n")


def test_sparsity_lookup_source_empty():
    code = sparsity_lookup_source("m_sparsity", {})
    assert "case" not in code
    assert "static" not in code
    assert "default:" in code


def test_sparsity_2d_source():
    pattern = SparsityPattern.from_entries([(1, 0), (0, 2)])
    code = sparsity_2d_source("m_sparse_jacobian_sparsity", pattern)
    assert code.startswith("__device__\nvoid m_sparse_jacobian_sparsity(")
    assert "static unsigned long const rows[2] = {1, 0};" in code
    assert "static unsigned long const cols[2] = {0, 2};" in code
    assert "*nnz = 2;" in code


def test_sparsity_2d_source_empty():
    code = sparsity_2d_source("s", SparsityPattern.from_entries([]))
    assert "rows[1] = {0};" in code
    assert "*nnz = 0;" in code
