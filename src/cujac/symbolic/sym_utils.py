"""Ordering, common subexpression elimination and pruning of assignments.

Assignments are ``(symbol, expression)`` pairs. Every routine here returns
them as a list in dependency order, which is the order they are printed
in generated code.
"""

import heapq
from typing import Dict, Iterable, List, Mapping, Set, Tuple, Union

import sympy as sp

Assignment = Tuple[sp.Symbol, sp.Expr]


def topological_sort(
    assignments: Union[Iterable[Assignment], Mapping[sp.Symbol, sp.Expr]],
) -> List[Assignment]:
    """Order assignments so that every symbol is assigned before use.

    Parameters
    ----------
    assignments
        ``(symbol, expression)`` pairs, or a mapping from symbol to
        expression.

    Returns
    -------
    list of tuple
        The same assignments in dependency order. Among the assignments
        whose dependencies are all satisfied, the one supplied first is
        emitted first, so the result is reproducible.

    Raises
    ------
    ValueError
        If the assignments depend on each other cyclically.
    """
    if isinstance(assignments, Mapping):
        assignments = assignments.items()
    pairs = list(assignments)
    index = {lhs: k for k, (lhs, _) in enumerate(pairs)}

    waiting_on: List[int] = []
    users: Dict[int, List[int]] = {k: [] for k in range(len(pairs))}
    for k, (_, rhs) in enumerate(pairs):
        deps = {index[sym] for sym in rhs.free_symbols if sym in index}
        waiting_on.append(len(deps))
        for dep in deps:
            users[dep].append(k)

    ready = [k for k, count in enumerate(waiting_on) if count == 0]
    heapq.heapify(ready)
    ordered: List[Assignment] = []
    while ready:
        k = heapq.heappop(ready)
        ordered.append(pairs[k])
        for user in users[k]:
            waiting_on[user] -= 1
            if waiting_on[user] == 0:
                heapq.heappush(ready, user)

    if len(ordered) != len(pairs):
        emitted = {lhs for lhs, _ in ordered}
        cycle = sorted(str(lhs) for lhs, _ in pairs if lhs not in emitted)
        raise ValueError(
            f"Circular dependency detected among {', '.join(cycle)}"
        )
    return ordered


def _next_free_index(symbols: Iterable[sp.Symbol], prefix: str) -> int:
    taken = [-1]
    for sym in symbols:
        suffix = str(sym)[len(prefix):]
        if str(sym).startswith(prefix) and suffix.isdigit():
            taken.append(int(suffix))
    return max(taken) + 1


def cse_and_stack(
    equations: Iterable[Assignment],
    prefix: str = "_cse",
) -> List[Assignment]:
    """Extract common subexpressions from a set of assignments.

    Parameters
    ----------
    equations
        Assignments to reduce.
    prefix
        Name prefix of the introduced symbols. Numbering continues after
        the highest index already used with this prefix.

    Returns
    -------
    list of tuple
        The introduced subexpressions followed by the reduced
        assignments, topologically sorted.
    """
    equations = list(equations)
    lhs = [sym for sym, _ in equations]
    names = sp.numbered_symbols(prefix,
                                start=_next_free_index(lhs, prefix))
    common, reduced = sp.cse([rhs for _, rhs in equations], symbols=names,
                             order="canonical")
    return topological_sort(list(common) + list(zip(lhs, reduced)))


def prune_unused_assignments(
    expressions: Iterable[Assignment],
    output_symbols: Iterable[sp.Symbol],
) -> List[Assignment]:
    """Drop assignments that no output depends on.

    ``expressions`` must already be in dependency order; the order of the
    kept assignments is unchanged.
    """
    expressions = list(expressions)
    assigned = {lhs for lhs, _ in expressions}
    needed: Set[sp.Symbol] = set(output_symbols) & assigned
    keep = [False] * len(expressions)
    for k in range(len(expressions) - 1, -1, -1):
        lhs, rhs = expressions[k]
        if lhs in needed:
            keep[k] = True
            needed |= rhs.free_symbols & assigned
    return [pair for pair, kept in zip(expressions, keep) if kept]
