import itertools

import numpy as np
import pytest
import sympy as sp

from cujac.codegen.lowering import (
    LoweredCode,
    VariableNameScheme,
    lower,
    split_assignment,
    variable_aliases,
)
from cujac.settings import EmitterSettings
from cujac.symbolic.function import DerivativeSubgraph


def _expand(assignments):
    values = {}
    for lhs, rhs in assignments:
        values[lhs] = rhs.subs(values)
    return values


class TestSplitAssignment:
    def test_small_expression_untouched(self):
        x, y, out = sp.symbols("x y out")
        temps = sp.numbered_symbols("_tmp")
        assert split_assignment(out, x + y, 5, temps) == [(out, x + y)]

    def test_products_hoisted(self):
        xs = sp.symbols("x0:8")
        out = sp.Symbol("out")
        rhs = sum(xs[2 * k] * xs[2 * k + 1] for k in range(4))
        temps = sp.numbered_symbols("_tmp")

        result = split_assignment(out, rhs, 3, temps)

        assert result[-1][0] == out
        assert all(sp.count_ops(r) <= 3 for _, r in result)
        assert sp.expand(_expand(result)[out] - rhs) == 0

    def test_long_sum_halved(self):
        xs = sp.symbols("x0:10")
        out = sp.Symbol("out")
        rhs = sp.Add(*xs)
        temps = sp.numbered_symbols("_tmp")

        result = split_assignment(out, rhs, 3, temps)

        assert len(result) > 1
        assert all(sp.count_ops(r) <= 3 for _, r in result)
        assert sp.expand(_expand(result)[out] - rhs) == 0


def test_variable_aliases():
    naming = VariableNameScheme()
    assert variable_aliases(naming, has_seeds=True, work_size=3) == [
        "Float const *x = in[0];",
        "Float const *dx = in[1];",
        "Float *dy = out[0];",
        "Float v[3];",
    ]
    assert variable_aliases(VariableNameScheme(dependent="y"),
                            has_seeds=False) == [
        "Float const *x = in[0];",
        "Float *y = out[0];",
    ]


class TestLower:
    def test_tangent_outputs(self, two_column_function):
        subgraph = two_column_function.evaluate_forward(0)
        lowered = lower(subgraph, function_name="k")

        assert isinstance(lowered, LoweredCode)
        lines = lowered.body.splitlines()
        assert len(lines) == 2
        assert lines[0].startswith("dy[0] = ")
        assert lines[1].startswith("dy[1] = ")
        assert "dx[0]" in lines[0] and "x[0]" in lines[0]
        assert "x[2]" in lines[1]
        assert lowered.helpers == ()
        assert lowered.work_size == 0

    def test_auxiliaries_use_work_array(self, auxiliary_function):
        subgraph = auxiliary_function.evaluate_zero()
        lowered = lower(subgraph, naming=VariableNameScheme(dependent="y"))

        assert lowered.work_size >= 1
        assert "v[0] = " in lowered.body
        assert "Float" not in lowered.body
        for k in range(3):
            assert f"y[{k}] = " in lowered.body

    def test_unused_auxiliaries_pruned(self):
        x = sp.Symbol("x")
        a, b = sp.symbols("a b")
        subgraph = DerivativeSubgraph(
            inputs=[x], outputs=[a + 1],
            auxiliaries=[(a, sp.sin(x)), (b, sp.cos(x))],
        )
        lowered = lower(subgraph)
        assert "cos" not in lowered.body
        assert lowered.work_size == 1

    def test_float_base_type(self):
        x = sp.Symbol("x")
        subgraph = DerivativeSubgraph(inputs=[x], outputs=[sp.exp(x) / 3])
        lowered = lower(subgraph, base_type_name="float")
        assert "expf(x[0])" in lowered.body

    def test_operation_limit_respected(self):
        xs = sp.symbols("x0:6")
        expr = sum(sp.sin(a) * sp.cos(b)
                   for a, b in itertools.combinations(xs, 2))
        subgraph = DerivativeSubgraph(inputs=xs, outputs=[expr])
        settings = EmitterSettings(max_operations_per_assignment=4)

        lowered = lower(subgraph, settings=settings)

        assert len(lowered.body.splitlines()) > 1
        assert lowered.work_size >= 1

    def test_statement_limit_creates_helpers(self):
        xs = sp.symbols("x0:3")
        outputs = [sp.sin(xs[0]), sp.cos(xs[1]), sp.exp(xs[2]),
                   xs[0] * xs[1], xs[1] + xs[2]]
        subgraph = DerivativeSubgraph(inputs=xs, outputs=outputs)
        settings = EmitterSettings(max_assignments_per_function=2)

        lowered = lower(subgraph, settings=settings, function_name="k")

        assert len(lowered.helpers) == 3
        assert lowered.body.splitlines() == [
            "k_part0(out, in, v);",
            "k_part1(out, in, v);",
            "k_part2(out, in, v);",
        ]
        assert lowered.work_size == 1
        for part, helper in enumerate(lowered.helpers):
            assert helper.startswith(
                f"__device__ void k_part{part}(Float *const *out,"
            )
            assert "Float *v)" in helper
            assert "Float const *x = in[0];" in helper
        statements = [line for helper in lowered.helpers
                      for line in helper.splitlines()
                      if line.strip().startswith("dy[")]
        assert len(statements) == 5

    @pytest.mark.parametrize("limit", [1, 3, 1000])
    def test_statement_limit_keeps_values(self, auxiliary_function, limit):
        """Splitting into helpers only regroups the same statements."""
        subgraph = auxiliary_function.evaluate_forward(np.ones(4))
        settings = EmitterSettings(max_assignments_per_function=limit)
        lowered = lower(subgraph, settings=settings, function_name="k")
        reference = lower(subgraph, function_name="k")

        statements = [line.strip() for helper in lowered.helpers
                      for line in helper.splitlines()[3:-1]
                      if " = " in line and not line.strip().startswith(
                          "Float")]
        if not lowered.helpers:
            statements = lowered.body.splitlines()
        assert statements == reference.body.splitlines()
