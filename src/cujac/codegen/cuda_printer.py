"""SymPy printer emitting CUDA C statements."""

from typing import Dict, Iterable, List, Optional, Tuple

import sympy as sp
from sympy.codegen.ast import float32, float64, real
from sympy.printing.c import C99CodePrinter
from sympy.printing.precedence import precedence


BASE_TYPES = {
    "double": float64,
    "float": float32,
}


class CUDAPrinter(C99CodePrinter):
    """SymPy printer for CUDA code generation with symbol substitutions.

    Parameters
    ----------
    symbol_map
        Dictionary mapping Symbol instances to the array elements (or
        names) they are printed as.
    base_type_name
        ``"double"`` or ``"float"``; selects literal suffixes and math
        function variants.
    precision
        Significant digits printed for floating point literals.
    """

    def __init__(self, symbol_map=None, base_type_name="double",
                 precision=15, **settings):
        settings.setdefault("allow_unknown_functions", True)
        settings["precision"] = precision
        settings["type_aliases"] = {real: BASE_TYPES[base_type_name]}
        super().__init__(settings)
        self.symbol_map = symbol_map or {}

    def doprint(self, expr, assign_to=None):
        """Print ``expr``, as a ``lhs = rhs;`` statement if ``assign_to``."""
        # Force outer assignment for Piecewise to avoid if/else blocks
        if assign_to is not None and isinstance(expr, sp.Piecewise):
            rhs = self._print(expr)
            lhs = self._print(assign_to)
            return f"{lhs} = {rhs};"
        return super().doprint(expr, assign_to=assign_to)

    def _print_Symbol(self, expr):
        """Print Symbol, applying the symbol map if available."""
        if expr in self.symbol_map:
            return self._print(self.symbol_map[expr])
        return super()._print_Symbol(expr)

    def _print_Indexed(self, expr):
        """Print ``base[i]`` without consulting the base shape.

        The label is printed by name; a symbol mapped onto an element of
        an array with its own name would otherwise map again.
        """
        indices = "][".join(self._print(i) for i in expr.indices)
        return f"{expr.base.label.name}[{indices}]"

    def _print_Float(self, flt):
        """Print literals with the configured number of digits."""
        type_ = self.type_aliases.get(real, real)
        suffix = self._get_literal_suffix(type_)
        num_str = str(flt.evalf(self._settings["precision"]))
        if "." not in num_str and "e" not in num_str:
            num_str += ".0"
        return num_str + suffix

    def _print_Pow(self, expr):
        """Replace squares and cubes with explicit multiplication."""
        if expr.exp == 2 or expr.exp == 3:
            base = self.parenthesize(expr.base, precedence(expr))
            return "(" + "*".join([base] * int(expr.exp)) + ")"
        return super()._print_Pow(expr)

    def _print_Piecewise(self, expr: sp.Piecewise):
        """Always render Piecewise as a pure expression (nested ternaries).

        The last condition must be ``True`` or act as the fallback.
        """
        pieces = list(expr.args)
        last_expr, _ = pieces[-1]
        rendered = self._print(last_expr)
        for e, c in reversed(pieces[:-1]):
            cond = self._print(c)
            val = self._print(e)
            rendered = f"(({cond}) ? ({val}) : ({rendered}))"
        return rendered


def print_cuda(expr: sp.Expr,
               symbol_map: Optional[Dict] = None,
               **kwargs) -> str:
    """Print one SymPy expression as CUDA C.

    Parameters
    ----------
    expr
        SymPy expression to print.
    symbol_map
        Dictionary mapping Symbol instances to array elements.
    **kwargs
        Additional arguments passed to :class:`CUDAPrinter`.
    """
    printer = CUDAPrinter(symbol_map=symbol_map, **kwargs)
    return printer.doprint(expr)


def print_cuda_multiple(exprs: Iterable[Tuple[sp.Symbol, sp.Expr]],
                        symbol_map=None,
                        **kwargs) -> List[str]:
    """Print ``lhs = rhs;`` statements for each assignment.

    Parameters
    ----------
    exprs
        Iterable of ``(symbol, expression)`` pairs.
    symbol_map
        Dictionary mapping algebraic symbols to their array elements.
    **kwargs
        Additional arguments passed to :class:`CUDAPrinter`.

    Returns
    -------
    list of str
        One C statement per assignment.
    """
    printer = CUDAPrinter(symbol_map=symbol_map, **kwargs)
    return [printer.doprint(expr, assign_to=assign_to)
            for assign_to, expr in exprs]
