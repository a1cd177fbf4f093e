"""First-order sparse forward (Jacobian-vector product) code generation.

The Jacobian sparsity is partitioned by column. Every column with at least
one nonzero gets its own device kernel computing the compressed tangent
outputs of that column. A dispatcher selects the kernel for a column, and
a driver routine runs the dispatcher for every seeded column and scatters
the compressed results into the dense output tangent.

Two strategies produce the per-column kernels:

* With atomics, the function is differentiated afresh for every column
  with a unit seed at that column.
* Without atomics, the sparse Jacobian is evaluated once and its flat
  entries are sliced by column.
"""

from typing import Dict, List

import numpy as np

from cujac.codegen.function_source import CudaFunctionSource
from cujac.codegen.lowering import VariableNameScheme, lower
from cujac.codegen.sparsity import (
    column_positions,
    partition_columns,
    sparsity_lookup_source,
)
from cujac.symbolic.function import DerivativeSubgraph


FORWARD_ONE_NAMING = VariableNameScheme(
    independent="x", seed="dx", dependent="dy", temporary="v"
)


def directional_function_source(
    function: str, elements: Dict[int, List[int]]
) -> str:
    """Emit the dispatcher calling ``<function>_indep<j>`` for column ``j``.

    Parameters
    ----------
    function
        Name of the dispatcher; per-column kernels share it as a prefix.
    elements
        Column map; every key gets one ``case``.

    Returns
    -------
    str
        A ``__device__`` function returning 0 after a successful call and 1
        for a column without a kernel.
    """
    title = f"int {function}("
    pad = " " * len(title)
    lines = [
        "__device__",
        f"{title}unsigned long pos,",
        f"{pad}Float *const *out,",
        f"{pad}Float const *const *in) {{",
        "  switch(pos) {",
    ]
    for col in elements:
        lines.append(f"    case {col}:")
        lines.append(f"         {function}_indep{col}(out, in);")
        lines.append("      return 0; // done")
    lines.append("    default:")
    lines.append("      return 1; // error")
    lines.append("  };")
    lines.append("}")
    return "\n".join(lines) + "\n"


def forward_one_driver_source(
    model_function: str,
    dispatch_function: str,
    sparsity_function: str,
    n: int,
    m: int,
    nnz_max: int,
    zero_scratch: bool = False,
) -> str:
    """Emit the entry point propagating one dense tangent.

    Parameters
    ----------
    model_function
        Name of the emitted routine.
    dispatch_function
        Dispatcher emitted by :func:`directional_function_source`.
    sparsity_function
        Per-column lookup emitted by
        :func:`~cujac.codegen.sparsity.sparsity_lookup_source`.
    n, m
        Domain and range sizes.
    nnz_max
        Largest number of rows in any column; sizes the scratch buffer.
    zero_scratch
        Zero the scratch buffer before every dispatch, for functions whose
        kernels accumulate into their outputs.

    Notes
    -----
    ``tx`` and ``ty`` interleave primal and tangent values, so the tangent
    of entry ``k`` lives at ``2 * k + 1``. Seeded columns without any
    nonzero are skipped. The routine returns the dispatcher's status as
    soon as it is nonzero, and 0 otherwise.
    """
    title = f"int {model_function}("
    pad = " " * len(title)
    code = (
        "__device__\n"
        f"{title}Float *ty,\n"
        f"{pad}const Float *tx) {{\n"
        "  unsigned long ePos, ej, i, j, nnz, nnzMax;\n"
        "  unsigned long const* pos;\n"
        f"  unsigned long txPos[{max(n, 1)}];\n"
        "  unsigned long nnzTx;\n"
        "  Float const * in[2];\n"
        "  Float* out[1];\n"
        f"  Float  x[{max(n, 1)}];\n"
        f"  Float compressed[{max(nnz_max, 1)}];\n"
        "  int ret;\n"
        "\n"
        "  nnzTx = 0;\n"
        "  nnzMax = 0;\n"
        f"  for (j = 0; j < {n}; j++) {{\n"
        "     if (tx[j * 2 + 1] != 0.0) {\n"
        f"        {sparsity_function}(j, &pos, &nnz);\n"
        "        if (nnz > nnzMax)\n"
        "           nnzMax = nnz;\n"
        "        else if (nnz == 0)\n"
        "           continue;\n"
        "        nnzTx++;\n"
        "        txPos[nnzTx - 1] = j;\n"
        "     }\n"
        "  }\n"
        f"  for (i = 0; i < {m}; i++) {{\n"
        "     ty[i * 2 + 1] = 0;\n"
        "  }\n"
        "\n"
        f"  for (j = 0; j < {n}; j++)\n"
        "     x[j] = tx[j * 2];\n"
        "\n"
        "  for (ej = 0; ej < nnzTx; ej++) {\n"
        "     j = txPos[ej];\n"
        f"     {sparsity_function}(j, &pos, &nnz);\n"
        "\n"
        "     in[0] = x;\n"
        "     in[1] = &tx[j * 2 + 1];\n"
        "     out[0] = compressed;\n"
    )
    if zero_scratch:
        code += (
            "     for(ePos = 0; ePos < nnz; ePos++)\n"
            "        compressed[ePos] = 0;\n"
            "\n"
        )
    code += (
        f"     ret = {dispatch_function}(j, out, in);\n"
        "\n"
        "     if (ret != 0) {\n"
        "        return ret;\n"
        "     }\n"
        "\n"
        "     for (ePos = 0; ePos < nnz; ePos++) {\n"
        "        ty[pos[ePos] * 2 + 1] += compressed[ePos];\n"
        "     }\n"
        "\n"
        "  }\n"
        "  return 0;\n"
        "}\n"
    )
    return code


class SparseForwardOneGenerator:
    """Generate the sparse forward-one sources of one model.

    Parameters
    ----------
    model
        A :class:`~cujac.codegen.model_source.CudaModelSourceGen`. Its
        function is the differentiation session every evaluation goes
        through; the generator never keeps subgraphs after lowering them.
    """

    def __init__(self, model):
        self.model = model
        self.function = model.function
        self.timelogger = model.timelogger
        self.naming = FORWARD_ONE_NAMING

    def kernel_name(self, column: int) -> str:
        return f"{self.model.name}_sparse_forward_one_indep{column}"

    def _emit_column(
        self,
        column: int,
        subgraph: DerivativeSubgraph,
        sources: list,
    ) -> str:
        """Lower one column's subgraph, append its unit, return the include.
        """
        model = self.model
        name = self.kernel_name(column)
        lowered = lower(
            subgraph,
            settings=model.settings,
            naming=self.naming,
            function_name=name,
            base_type_name=model.base_type_name,
        )
        generator = CudaFunctionSource(
            name=name,
            local_input_dim=model.local_input_dim(),
            global_input_dim=model.global_input_dim,
            output_dim=len(subgraph),
            is_forward_one=True,
        )
        text = generator.emit_source(lowered, self.naming, model.kernel_only)
        filename = f"{name}.{'cuh' if model.kernel_only else 'cu'}"
        sources.append((filename, text))
        return f'#include "{filename}"\n'

    def generate_with_atomics(
        self, elements: Dict[int, List[int]], sources: list
    ) -> List[str]:
        """Differentiate once per column with a unit seed at that column.

        Returns the ``#include`` lines of the per-column units, which are
        appended to ``sources`` in column order.
        """
        includes = []
        for column, rows in elements.items():
            event = f"{self.model.name} forward one, indep {column}"
            with self.timelogger.timed(event, column=column):
                subgraph = self.function.evaluate_forward(column, rows=rows)
                includes.append(self._emit_column(column, subgraph, sources))
        return includes

    def generate_no_atomics(
        self, elements: Dict[int, List[int]], sources: list
    ) -> List[str]:
        """Evaluate the sparse Jacobian once and slice it by column.

        Returns the ``#include`` lines of the per-column units, which are
        appended to ``sources`` in column order.
        """
        pattern = self.model.determine_jacobian_sparsity()
        n = self.function.domain_size()
        jac_flat = self.function.evaluate_forward(np.ones(n), pattern=pattern)

        positions = column_positions(elements)
        flat_indices = {col: [0] * len(rows)
                        for col, rows in elements.items()}
        for el, (row, col) in enumerate(pattern):
            flat_indices[col][positions[col][row]] = el

        includes = []
        for column, indices in flat_indices.items():
            event = f"{self.model.name} forward one, indep {column}"
            with self.timelogger.timed(event, column=column):
                subgraph = jac_flat.select(indices)
                includes.append(self._emit_column(column, subgraph, sources))
        return includes

    def forward_one_source(self, sources: list) -> str:
        """Generate every forward-one unit and return the top-level source.

        Per-column units are appended to ``sources``; the returned text
        includes them and defines the dispatcher, the sparsity lookup and
        the driver ``<model>_forward_one``.

        Raises
        ------
        CodegenConfigurationError
            If the global input dimension exceeds the domain size. Nothing
            is generated in that case.
        """
        model = self.model
        model.validate()
        name = model.name
        job = f"{name} forward one"
        m = self.function.range_size()

        with self.timelogger.timed(job):
            self.timelogger.progress(
                job,
                f'Generating first-order forward code for function "{name}" '
                f"with input dimension {model.local_input_dim()} and output "
                f"dimension {m}...",
            )
            elements = partition_columns(model.determine_jacobian_sparsity())
            uses_atomics = self.function.uses_atomics()
            self.timelogger.progress(
                job, f"{name} uses atomics? {str(uses_atomics).lower()}"
            )
            if uses_atomics:
                includes = self.generate_with_atomics(elements, sources)
            else:
                includes = self.generate_no_atomics(elements, sources)

        dispatch_function = f"{name}_sparse_forward_one"
        sparsity_function = f"{name}_forward_one_sparsity"
        nnz_max = max((len(rows) for rows in elements.values()), default=0)

        code = "".join(includes)
        code += "\n"
        code += directional_function_source(dispatch_function, elements)
        code += "\n__device__\n"
        code += sparsity_lookup_source(sparsity_function, elements)
        code += "\n"
        code += forward_one_driver_source(
            f"{name}_forward_one",
            dispatch_function,
            sparsity_function,
            self.function.domain_size(),
            m,
            nnz_max,
            zero_scratch=self.function.uses_loops(),
        )
        return code
