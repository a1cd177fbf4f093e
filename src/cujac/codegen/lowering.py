"""Lower a derivative subgraph to CUDA C assignment statements.

The lowering stacks auxiliary and output assignments, applies common
subexpression elimination, drops assignments that do not reach an output,
splits heavy expressions into temporaries and finally prints every
assignment through :func:`~cujac.codegen.cuda_printer.print_cuda_multiple`.
Intermediate values live in a per-thread work array so that bodies longer
than the statement ceiling can be divided among helper functions.
"""

from typing import Dict, Iterator, List, Optional, Tuple

import attrs
import sympy as sp

from cujac.codegen.cuda_printer import print_cuda_multiple
from cujac.settings import EmitterSettings
from cujac.symbolic.sym_utils import (
    cse_and_stack,
    prune_unused_assignments,
)

Assignment = Tuple[sp.Symbol, sp.Expr]


@attrs.define(frozen=True)
class VariableNameScheme:
    """Array names used for each kind of variable in generated code.

    Attributes
    ----------
    independent : str
        Input vector ``in[0]``.
    seed : str
        Seed vector ``in[1]`` (tangent or adjoint weights).
    dependent : str
        Output vector ``out[0]``.
    temporary : str
        Per-thread work array holding intermediates.
    """

    independent: str = "x"
    seed: str = "dx"
    dependent: str = "dy"
    temporary: str = "v"


@attrs.define(frozen=True)
class LoweredCode:
    """Result of lowering one subgraph.

    Attributes
    ----------
    body : str
        Statements forming the function body, one per line, unindented.
    helpers : tuple of str
        Helper device functions the body calls; they must precede it.
    work_size : int
        Number of elements in the work array.
    """

    body: str
    helpers: Tuple[str, ...] = ()
    work_size: int = 0


def _is_splittable(arg) -> bool:
    return isinstance(arg, sp.Expr) and not arg.is_Atom


def split_assignment(
    lhs: sp.Symbol,
    rhs: sp.Expr,
    max_ops: int,
    temporaries: Iterator[sp.Symbol],
) -> List[Assignment]:
    """Break ``lhs = rhs`` into assignments of at most ``max_ops`` ops.

    Compound arguments are hoisted into temporaries, heaviest first. Long
    sums and products of atoms are halved recursively.
    """
    if rhs.is_Atom or sp.count_ops(rhs) <= max_ops:
        return [(lhs, rhs)]

    assignments: List[Assignment] = []
    args = list(rhs.args)
    order = sorted(range(len(args)),
                   key=lambda k: sp.count_ops(args[k]), reverse=True)
    for k in order:
        if sp.count_ops(rhs.func(*args)) <= max_ops:
            break
        if not _is_splittable(args[k]):
            continue
        temp = next(temporaries)
        assignments.extend(
            split_assignment(temp, args[k], max_ops, temporaries)
        )
        args[k] = temp

    new_rhs = rhs.func(*args)
    if ((rhs.is_Add or rhs.is_Mul) and len(args) > 2
            and sp.count_ops(new_rhs) > max_ops):
        half = len(args) // 2
        left, right = next(temporaries), next(temporaries)
        assignments.extend(split_assignment(
            left, rhs.func(*args[:half]), max_ops, temporaries))
        assignments.extend(split_assignment(
            right, rhs.func(*args[half:]), max_ops, temporaries))
        new_rhs = rhs.func(left, right)
    assignments.append((lhs, new_rhs))
    return assignments


def _part_signature(name: str, temporary: str) -> str:
    indent = " " * (len(name) + 17)
    return (f"__device__ void {name}(Float *const *out,\n"
            f"{indent}Float const *const *in,\n"
            f"{indent}Float *{temporary})")


def variable_aliases(naming: VariableNameScheme, has_seeds: bool,
                     work_size: int = 0) -> List[str]:
    """Return the declarations binding array names to ``in``/``out``."""
    lines = [f"Float const *{naming.independent} = in[0];"]
    if has_seeds:
        lines.append(f"Float const *{naming.seed} = in[1];")
    lines.append(f"Float *{naming.dependent} = out[0];")
    if work_size:
        lines.append(f"Float {naming.temporary}[{work_size}];")
    return lines


def lower(
    subgraph,
    settings: Optional[EmitterSettings] = None,
    naming: Optional[VariableNameScheme] = None,
    function_name: str = "",
    base_type_name: str = "double",
) -> LoweredCode:
    """Lower ``subgraph`` to CUDA C statements.

    Parameters
    ----------
    subgraph
        A :class:`~cujac.symbolic.function.DerivativeSubgraph`.
    settings
        Statement and operation ceilings and literal precision.
    naming
        Array names for inputs, seeds, outputs and intermediates.
    function_name
        Name of the enclosing function; prefixes helper function names.
    base_type_name
        ``"double"`` or ``"float"``.

    Returns
    -------
    LoweredCode
        Body statements, helper functions and the work array size. The
        body does not declare the array aliases; see
        :func:`variable_aliases`.
    """
    settings = settings or EmitterSettings()
    naming = naming or VariableNameScheme()

    dependent = sp.IndexedBase(naming.dependent)
    output_symbols = [sp.Symbol(f"_out{k}") for k in
                      range(len(subgraph.outputs))]
    equations = list(subgraph.auxiliaries)
    equations.extend(zip(output_symbols, subgraph.outputs))
    equations = cse_and_stack(equations)
    equations = prune_unused_assignments(equations, output_symbols)

    temporaries = sp.numbered_symbols("_tmp")
    statements: List[Assignment] = []
    for lhs, rhs in equations:
        statements.extend(split_assignment(
            lhs, rhs, settings.max_operations_per_assignment, temporaries
        ))

    symbol_map: Dict[sp.Symbol, sp.Expr] = {}
    independent = sp.IndexedBase(naming.independent)
    for i, sym in enumerate(subgraph.inputs):
        symbol_map[sym] = independent[i]
    seed = sp.IndexedBase(naming.seed)
    for i, sym in enumerate(subgraph.seeds):
        symbol_map[sym] = seed[i]
    for k, sym in enumerate(output_symbols):
        symbol_map[sym] = dependent[k]
    temporary = sp.IndexedBase(naming.temporary)
    work_size = 0
    for lhs, _ in statements:
        if lhs not in symbol_map:
            symbol_map[lhs] = temporary[work_size]
            work_size += 1

    lines = print_cuda_multiple(
        statements,
        symbol_map=symbol_map,
        base_type_name=base_type_name,
        precision=settings.precision_for(base_type_name),
    )

    max_lines = settings.max_assignments_per_function
    if len(lines) <= max_lines:
        return LoweredCode(body="\n".join(lines), work_size=work_size)

    has_seeds = bool(subgraph.seeds)
    helpers = []
    calls = []
    for part, start in enumerate(range(0, len(lines), max_lines)):
        part_name = f"{function_name}_part{part}"
        chunk = variable_aliases(naming, has_seeds)
        chunk.extend(lines[start:start + max_lines])
        helpers.append(
            _part_signature(part_name, naming.temporary) + " {\n"
            + "\n".join("  " + line for line in chunk) + "\n}\n"
        )
        calls.append(f"{part_name}(out, in, {naming.temporary});")
    return LoweredCode(
        body="\n".join(calls),
        helpers=tuple(helpers),
        work_size=max(work_size, 1),
    )
