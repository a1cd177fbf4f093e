"""Utilities for symbolic Jacobian computation.

Derivatives are formed with the chain rule across auxiliary assignments, so
auxiliary symbols stay in the derivative expressions instead of being
substituted away. Callers must emit the auxiliary assignments alongside the
derivatives.

Adapted from :mod:`chaste_codegen._jacobian` under the MIT licence.
"""

from typing import Dict, List, Sequence, Set, Tuple

import sympy as sp

from cujac.symbolic.sym_utils import topological_sort


def _auxiliary_partials(
    auxiliaries: Sequence[Tuple[sp.Symbol, sp.Expr]],
    inputs: Sequence[sp.Symbol],
) -> Dict[sp.Symbol, sp.Matrix]:
    """Return the gradient row of every auxiliary symbol w.r.t. ``inputs``.

    ``auxiliaries`` must be topologically sorted.
    """
    num_in = len(inputs)
    aux_symbols = {lhs for lhs, _ in auxiliaries}
    auxiliary_gradients: Dict[sp.Symbol, sp.Matrix] = {}

    for sym, expr in auxiliaries:
        direct_grad = sp.Matrix(
            [[sp.diff(expr, in_sym) for in_sym in inputs]]
        )
        chain_grad = sp.zeros(1, num_in)
        for other_sym in expr.free_symbols & aux_symbols:
            if other_sym not in auxiliary_gradients:
                raise ValueError(
                    f"Topological order violation: {sym} depends on "
                    f"{other_sym} which is not yet processed."
                )
            chain_grad += (sp.diff(expr, other_sym)
                           * auxiliary_gradients[other_sym])
        auxiliary_gradients[sym] = direct_grad + chain_grad
    return auxiliary_gradients


def generate_jacobian(
    auxiliaries: Sequence[Tuple[sp.Symbol, sp.Expr]],
    outputs: Sequence[sp.Expr],
    inputs: Sequence[sp.Symbol],
) -> sp.Matrix:
    """Return the symbolic Jacobian matrix of ``outputs`` w.r.t. ``inputs``.

    Parameters
    ----------
    auxiliaries
        Intermediate ``(symbol, expression)`` assignments, in any order.
    outputs
        Output expressions, one per Jacobian row.
    inputs
        Independent symbols, one per Jacobian column.

    Returns
    -------
    sp.Matrix
        The ``len(outputs) x len(inputs)`` Jacobian.
    """
    auxiliaries = topological_sort(list(auxiliaries))
    aux_symbols = {lhs for lhs, _ in auxiliaries}
    auxiliary_gradients = _auxiliary_partials(auxiliaries, inputs)

    jac = sp.zeros(len(outputs), len(inputs))
    for i, out_expr in enumerate(outputs):
        direct_row = sp.Matrix(
            [[sp.diff(out_expr, in_sym) for in_sym in inputs]]
        )
        chain_row = sp.zeros(1, len(inputs))
        for aux_sym in out_expr.free_symbols & aux_symbols:
            chain_row += (sp.diff(out_expr, aux_sym)
                          * auxiliary_gradients[aux_sym])
        jac[i, :] = direct_row + chain_row
    return jac


def generate_jacobian_column(
    auxiliaries: Sequence[Tuple[sp.Symbol, sp.Expr]],
    outputs: Sequence[sp.Expr],
    inputs: Sequence[sp.Symbol],
    column: int,
) -> List[sp.Expr]:
    """Return the derivatives of ``outputs`` w.r.t. ``inputs[column]``.

    Only the one requested column is differentiated, which makes this the
    per-seed counterpart of :func:`generate_jacobian`.
    """
    in_sym = inputs[column]
    auxiliaries = topological_sort(list(auxiliaries))
    aux_symbols = {lhs for lhs, _ in auxiliaries}

    aux_derivatives: Dict[sp.Symbol, sp.Expr] = {}
    for sym, expr in auxiliaries:
        derivative = sp.diff(expr, in_sym)
        for other_sym in expr.free_symbols & aux_symbols:
            derivative += sp.diff(expr, other_sym) * aux_derivatives[other_sym]
        aux_derivatives[sym] = derivative

    column_exprs = []
    for out_expr in outputs:
        derivative = sp.diff(out_expr, in_sym)
        for aux_sym in out_expr.free_symbols & aux_symbols:
            derivative += sp.diff(out_expr, aux_sym) * aux_derivatives[aux_sym]
        column_exprs.append(derivative)
    return column_exprs


def structural_dependencies(
    auxiliaries: Sequence[Tuple[sp.Symbol, sp.Expr]],
    outputs: Sequence[sp.Expr],
    inputs: Sequence[sp.Symbol],
) -> List[Set[int]]:
    """Return, per output, the indices of the inputs it depends on.

    Dependencies are followed through auxiliary assignments without
    differentiating anything.
    """
    input_index = {sym: idx for idx, sym in enumerate(inputs)}
    aux_deps: Dict[sp.Symbol, Set[int]] = {}

    def _deps(expr):
        found = set()
        for sym in expr.free_symbols:
            if sym in input_index:
                found.add(input_index[sym])
            elif sym in aux_deps:
                found |= aux_deps[sym]
        return found

    for sym, expr in topological_sort(list(auxiliaries)):
        aux_deps[sym] = _deps(expr)
    return [_deps(out_expr) for out_expr in outputs]
