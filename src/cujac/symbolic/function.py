"""SymPy-backed differentiation session consumed by the code generators.

Published Classes
-----------------
:class:`DerivativeSubgraph`
    Output expressions plus the auxiliary assignments they reference.
:class:`SymbolicFunction`
    A vector function ``y = f(x)`` with the evaluation interface the
    generators rely on: sizes, sparsity, atomics/loops predicates and
    forward, reverse and Jacobian evaluations.

Notes
-----
A :class:`SymbolicFunction` caches its full Jacobian once computed. The
cache is the session's only state besides :attr:`evaluation_count`, and it
is owned by the instance, so separate functions never share it.
"""

import re
from typing import Dict, Iterable, Optional, Sequence, Tuple, Union

import attrs
import numpy as np
import sympy as sp

from cujac.codegen.sparsity import SparsityPattern
from cujac.symbolic.jacobian import (
    generate_jacobian,
    generate_jacobian_column,
    structural_dependencies,
)
from cujac.symbolic.sym_utils import topological_sort


def _as_symbol_tuple(values) -> Tuple[sp.Symbol, ...]:
    if isinstance(values, str):
        values = sp.symbols(values, seq=True)
    return tuple(sp.Symbol(v) if isinstance(v, str) else v for v in values)


def _as_expr_tuple(values) -> Tuple[sp.Expr, ...]:
    return tuple(sp.sympify(v) for v in values)


def _as_assignments(values) -> Tuple[Tuple[sp.Symbol, sp.Expr], ...]:
    if isinstance(values, dict):
        values = values.items()
    pairs = [(lhs, sp.sympify(rhs)) for lhs, rhs in values]
    return tuple(topological_sort(pairs))


def _seed_value(value) -> sp.Expr:
    value = float(value)
    if value.is_integer():
        return sp.Integer(int(value))
    return sp.Float(value)


@attrs.define(frozen=True)
class DerivativeSubgraph:
    """Expressions for one generated function, owned by the caller.

    Attributes
    ----------
    inputs : tuple of sympy.Symbol
        Independent variables, in input-vector order.
    outputs : tuple of sympy.Expr
        One expression per output slot.
    seeds : tuple of sympy.Symbol
        Seed (tangent or adjoint weight) variables, possibly empty.
    auxiliaries : tuple of (sympy.Symbol, sympy.Expr)
        Intermediate assignments the outputs may reference, in dependency
        order.
    """

    inputs: Tuple[sp.Symbol, ...] = attrs.field(converter=tuple)
    outputs: Tuple[sp.Expr, ...] = attrs.field(converter=tuple)
    seeds: Tuple[sp.Symbol, ...] = attrs.field(default=(), converter=tuple)
    auxiliaries: Tuple[Tuple[sp.Symbol, sp.Expr], ...] = attrs.field(
        default=(), converter=tuple
    )

    def __len__(self) -> int:
        return len(self.outputs)

    def select(self, indices: Iterable[int]) -> "DerivativeSubgraph":
        """Return a subgraph holding only the outputs at ``indices``."""
        return attrs.evolve(
            self, outputs=tuple(self.outputs[i] for i in indices)
        )


# Names lowering and reverse evaluation introduce for their own symbols.
_RESERVED_NAME = re.compile(r"(_out|_tmp|_cse|py_)\d+")


def _validate_inputs(instance, attribute, value):
    if not all(isinstance(sym, sp.Symbol) for sym in value):
        raise TypeError("inputs must be SymPy symbols")
    if len(set(value)) != len(value):
        raise ValueError("inputs must be unique")


@attrs.define
class SymbolicFunction:
    """A vector function ``y = f(x)`` defined by SymPy expressions.

    Parameters
    ----------
    inputs
        Independent symbols (or names), in input-vector order.
    outputs
        One expression per output, in terms of inputs and auxiliaries.
    auxiliaries
        Intermediate ``(symbol, expression)`` assignments, or a dict.
    atomic_functions
        SymPy ``Function`` subclasses that are evaluated by external device
        code and differentiated through their own ``fdiff``. Their presence
        makes :meth:`uses_atomics` true.
    has_loops
        Whether the function contains loop-structured subcomputations whose
        generated code accumulates into pre-zeroed output buffers.
    tangent_symbol
        Symbol standing for the scalar tangent seed in forward evaluations.
    """

    inputs: Tuple[sp.Symbol, ...] = attrs.field(
        converter=_as_symbol_tuple, validator=_validate_inputs
    )
    outputs: Tuple[sp.Expr, ...] = attrs.field(converter=_as_expr_tuple)
    auxiliaries: Tuple[Tuple[sp.Symbol, sp.Expr], ...] = attrs.field(
        default=(), converter=_as_assignments
    )
    atomic_functions: Tuple[type, ...] = attrs.field(
        default=(), converter=tuple
    )
    has_loops: bool = attrs.field(
        default=False, validator=attrs.validators.instance_of(bool)
    )
    tangent_symbol: sp.Symbol = attrs.field(
        factory=lambda: sp.Symbol("dx"),
        validator=attrs.validators.instance_of(sp.Symbol),
    )
    evaluation_count: int = attrs.field(default=0, init=False, eq=False)
    _jacobian: Optional[sp.Matrix] = attrs.field(
        default=None, init=False, repr=False, eq=False
    )

    def __attrs_post_init__(self):
        assigned = [lhs for lhs, _ in self.auxiliaries]
        defined = set(self.inputs) | set(assigned)
        if len(defined) != len(self.inputs) + len(assigned):
            raise ValueError(
                "auxiliary symbols must be unique and distinct from inputs"
            )
        if self.tangent_symbol in defined:
            raise ValueError(
                f"tangent symbol {self.tangent_symbol} is also an input or "
                f"auxiliary"
            )
        reserved = sorted(str(sym) for sym in defined
                          if _RESERVED_NAME.fullmatch(str(sym)))
        if reserved:
            raise ValueError(
                f"symbol names {', '.join(reserved)} are reserved for "
                f"generated code"
            )

        used = set()
        for expr in self.outputs:
            used |= expr.free_symbols
        for _, rhs in self.auxiliaries:
            used |= rhs.free_symbols
        unknown = sorted(str(sym) for sym in used - defined)
        if unknown:
            raise ValueError(
                f"expressions reference symbols that are neither inputs "
                f"nor auxiliaries: {', '.join(unknown)}"
            )

    @classmethod
    def from_equations(
        cls,
        equations: Union[
            Iterable[Tuple[sp.Symbol, sp.Expr]], Dict[sp.Symbol, sp.Expr]
        ],
        input_order: Union[Dict[sp.Symbol, int], Sequence[sp.Symbol]],
        output_order: Union[Dict[sp.Symbol, int], Sequence[sp.Symbol]],
        **kwargs,
    ) -> "SymbolicFunction":
        """Build a function from a flat set of assignments.

        Parameters
        ----------
        equations
            All ``(lhs, rhs)`` assignments, auxiliary and output alike.
        input_order
            Input symbols, or a dict mapping each to its input index.
        output_order
            Output symbols (left-hand sides of ``equations``), or a dict
            mapping each to its output index.
        **kwargs
            Forwarded to the constructor.
        """
        if isinstance(equations, dict):
            equations = list(equations.items())
        else:
            equations = list(equations)
        if isinstance(input_order, dict):
            input_order = sorted(input_order, key=input_order.get)
        if isinstance(output_order, dict):
            output_order = sorted(output_order, key=output_order.get)

        rhs_by_lhs = dict(equations)
        missing = [sym for sym in output_order if sym not in rhs_by_lhs]
        if missing:
            raise ValueError(f"No equation defines outputs {missing}")
        output_set = set(output_order)
        auxiliaries = [(lhs, rhs) for lhs, rhs in equations
                       if lhs not in output_set]
        outputs = [rhs_by_lhs[sym] for sym in output_order]
        return cls(inputs=input_order, outputs=outputs,
                   auxiliaries=auxiliaries, **kwargs)

    # ------------------------------------------------------------------ #
    #                            Properties                              #
    # ------------------------------------------------------------------ #
    def domain_size(self) -> int:
        """Number of independent variables."""
        return len(self.inputs)

    def range_size(self) -> int:
        """Number of outputs."""
        return len(self.outputs)

    def jacobian_sparsity(self) -> SparsityPattern:
        """Return the structural Jacobian sparsity, row-major ordered."""
        deps = structural_dependencies(
            self.auxiliaries, self.outputs, self.inputs
        )
        entries = [(row, col) for row, cols in enumerate(deps)
                   for col in sorted(cols)]
        return SparsityPattern.from_entries(entries)

    def uses_atomics(self) -> bool:
        """Whether any expression applies a registered atomic function."""
        if not self.atomic_functions:
            return False
        expressions = list(self.outputs)
        expressions.extend(rhs for _, rhs in self.auxiliaries)
        return any(expr.has(*self.atomic_functions) for expr in expressions)

    def uses_loops(self) -> bool:
        """Whether the function contains loop-structured subcomputations."""
        return self.has_loops

    # ------------------------------------------------------------------ #
    #                            Evaluations                             #
    # ------------------------------------------------------------------ #
    def _subgraph(self, outputs, seeds=()) -> DerivativeSubgraph:
        return DerivativeSubgraph(
            inputs=self.inputs,
            outputs=outputs,
            seeds=seeds,
            auxiliaries=self.auxiliaries,
        )

    def _full_jacobian(self) -> sp.Matrix:
        if self._jacobian is None:
            self._jacobian = generate_jacobian(
                self.auxiliaries, self.outputs, self.inputs
            )
        return self._jacobian

    def _check_column(self, column: int) -> None:
        if not 0 <= column < self.domain_size():
            raise IndexError(
                f"Seed index {column} outside domain of size "
                f"{self.domain_size()}"
            )

    def _check_rows(self, rows: Sequence[int]) -> None:
        for row in rows:
            if not 0 <= row < self.range_size():
                raise IndexError(
                    f"Output index {row} outside range of size "
                    f"{self.range_size()}"
                )

    def evaluate_forward(
        self,
        seed: Union[int, Sequence[float], np.ndarray],
        rows: Optional[Sequence[int]] = None,
        pattern: Optional[SparsityPattern] = None,
    ) -> DerivativeSubgraph:
        """Evaluate a first-order forward (tangent) sweep symbolically.

        Parameters
        ----------
        seed
            Either the index of the single input seeded with the tangent
            symbol, or a full seed vector scaling the tangent per input.
        rows
            For an index seed, the outputs to keep (all by default).
        pattern
            For a seed vector, return one expression per pattern entry,
            ``J[r, c] * seed[c] * dx``, instead of dense outputs.

        Returns
        -------
        DerivativeSubgraph
            Tangent expressions, with :attr:`tangent_symbol` as the seed.

        Notes
        -----
        An index seed differentiates w.r.t. that one input afresh on every
        call. A seed vector uses the session's cached Jacobian.
        """
        self.evaluation_count += 1
        dx = self.tangent_symbol

        if isinstance(seed, (int, np.integer)):
            column = int(seed)
            self._check_column(column)
            if rows is None:
                rows = range(self.range_size())
            rows = list(rows)
            self._check_rows(rows)
            derivatives = generate_jacobian_column(
                self.auxiliaries, self.outputs, self.inputs, column
            )
            return self._subgraph([derivatives[i] * dx for i in rows], (dx,))

        seed_values = [_seed_value(s) for s in np.asarray(seed).ravel()]
        if len(seed_values) != self.domain_size():
            raise ValueError(
                f"Seed vector has length {len(seed_values)}, expected "
                f"{self.domain_size()}"
            )
        jac = self._full_jacobian()
        if pattern is not None:
            self._check_rows(pattern.rows.tolist())
            for col in pattern.cols.tolist():
                self._check_column(col)
            outputs = [jac[row, col] * seed_values[col] * dx
                       for row, col in pattern]
        else:
            outputs = [
                sum((jac[row, col] * seed_values[col]
                     for col in range(self.domain_size())), sp.S.Zero) * dx
                for row in range(self.range_size())
            ]
        return self._subgraph(outputs, (dx,))

    def evaluate_zero(self) -> DerivativeSubgraph:
        """Return the function values themselves."""
        self.evaluation_count += 1
        return self._subgraph(self.outputs)

    def evaluate_jacobian(self) -> DerivativeSubgraph:
        """Return the dense Jacobian, row-major."""
        self.evaluation_count += 1
        jac = self._full_jacobian()
        return self._subgraph(list(jac))

    def evaluate_sparse_jacobian(
        self, pattern: SparsityPattern
    ) -> DerivativeSubgraph:
        """Return the Jacobian entries listed by ``pattern``, in order."""
        self.evaluation_count += 1
        jac = self._full_jacobian()
        self._check_rows(pattern.rows.tolist())
        return self._subgraph([jac[row, col] for row, col in pattern])

    def evaluate_reverse(self) -> DerivativeSubgraph:
        """Return ``J^T w`` for a vector of adjoint weight symbols ``w``.

        The weights are the subgraph's seeds, one per output.
        """
        self.evaluation_count += 1
        jac = self._full_jacobian()
        weights = tuple(sp.symbols(f"py_0:{self.range_size()}"))
        outputs = [
            sum((jac[row, col] * weights[row]
                 for row in range(self.range_size())), sp.S.Zero)
            for col in range(self.domain_size())
        ]
        return self._subgraph(outputs, weights)
