"""Per-model CUDA source generation for every derivative mode.

A :class:`CudaModelSourceGen` pairs a :class:`SymbolicFunction` with the
settings of one generated model: its name, how many trailing inputs are
shared by all threads, which modes to generate and how to format the
lowered code. The sparse forward-one mode lives in
:mod:`cujac.codegen.forward_one`; the remaining modes each produce one
kernel through :class:`CudaFunctionSource`.
"""

from typing import Optional

import attrs

from cujac._utils import getype_validator
from cujac.codegen.forward_one import SparseForwardOneGenerator
from cujac.codegen.function_source import (
    AccumulationMode,
    CudaFunctionSource,
)
from cujac.codegen.lowering import VariableNameScheme, lower
from cujac.codegen.sparsity import SparsityPattern, sparsity_2d_source
from cujac.errors import CodegenConfigurationError
from cujac.settings import EmitterSettings
from cujac.symbolic.function import DerivativeSubgraph, SymbolicFunction
from cujac.time_logger import TimeLogger, default_timelogger


ZERO_NAMING = VariableNameScheme(dependent="y")
JACOBIAN_NAMING = VariableNameScheme(dependent="jac")
REVERSE_ONE_NAMING = VariableNameScheme(seed="py", dependent="px")


@attrs.define
class CudaModelSourceGen:
    """Generation settings of one model.

    Parameters
    ----------
    name
        Prefix of every generated function and file; must be a valid C
        identifier.
    function
        Differentiation session of the model.
    global_input_dim
        Number of trailing inputs shared by all threads. The remaining
        leading inputs are read per thread.
    kernel_only
        Generate device functions only, for inclusion by other code.
    base_type_name
        ``"double"`` or ``"float"``.
    jacobian_sparsity
        Explicit Jacobian sparsity; derived from ``function`` when omitted.
    create_forward_zero, create_sparse_forward_one, create_reverse_one,
    create_jacobian, create_sparse_jacobian
        Which modes :class:`~cujac.library.CudaLibraryProcessor` generates.
    settings
        Limits and precision passed to the lowering.
    timelogger
        Receives generation events. Defaults to the module-level logger.
    """

    name: str = attrs.field(
        validator=attrs.validators.matches_re(r"[A-Za-z_][A-Za-z0-9_]*")
    )
    function: SymbolicFunction = attrs.field(
        validator=attrs.validators.instance_of(SymbolicFunction)
    )
    global_input_dim: int = attrs.field(
        default=0, validator=getype_validator(int, 0)
    )
    kernel_only: bool = attrs.field(
        default=False, validator=attrs.validators.instance_of(bool)
    )
    base_type_name: str = attrs.field(
        default="double", validator=attrs.validators.in_({"double", "float"})
    )
    jacobian_sparsity: Optional[SparsityPattern] = attrs.field(
        default=None,
        validator=attrs.validators.optional(
            attrs.validators.instance_of(SparsityPattern)
        ),
    )
    create_forward_zero: bool = attrs.field(default=False)
    create_sparse_forward_one: bool = attrs.field(default=True)
    create_reverse_one: bool = attrs.field(default=False)
    create_jacobian: bool = attrs.field(default=False)
    create_sparse_jacobian: bool = attrs.field(default=False)
    settings: EmitterSettings = attrs.field(
        factory=EmitterSettings,
        validator=attrs.validators.instance_of(EmitterSettings),
    )
    timelogger: TimeLogger = attrs.field(
        default=default_timelogger, eq=False, repr=False
    )

    def local_input_dim(self) -> int:
        """Number of per-thread inputs."""
        return self.function.domain_size() - self.global_input_dim

    def output_dim(self) -> int:
        return self.function.range_size()

    def validate(self) -> None:
        """Check the model against its function before generating code.

        Raises
        ------
        CodegenConfigurationError
            If the global input dimension exceeds the domain size, or an
            explicit sparsity pattern indexes outside the Jacobian.
        """
        n = self.function.domain_size()
        m = self.function.range_size()
        if self.global_input_dim > n:
            raise CodegenConfigurationError(
                f"CUDA codegen failed for model '{self.name}': global data "
                f"input size ({self.global_input_dim}) must not be larger "
                f"than the provided input vector size ({n})."
            )
        pattern = self.jacobian_sparsity
        if pattern is not None and len(pattern):
            if pattern.rows.max() >= m or pattern.cols.max() >= n:
                raise CodegenConfigurationError(
                    f"Jacobian sparsity of model '{self.name}' does not fit "
                    f"a {m}x{n} Jacobian."
                )

    def determine_jacobian_sparsity(self) -> SparsityPattern:
        """Return the explicit sparsity, or the function's structural one."""
        if self.jacobian_sparsity is not None:
            return self.jacobian_sparsity
        return self.function.jacobian_sparsity()

    # ------------------------------------------------------------------ #
    #                               Modes                                #
    # ------------------------------------------------------------------ #
    def _kernel_source(
        self,
        function_name: str,
        subgraph: DerivativeSubgraph,
        naming: VariableNameScheme,
        **unit_kwargs,
    ) -> str:
        lowered = lower(
            subgraph,
            settings=self.settings,
            naming=naming,
            function_name=function_name,
            base_type_name=self.base_type_name,
        )
        generator = CudaFunctionSource(
            name=function_name,
            local_input_dim=self.local_input_dim(),
            global_input_dim=self.global_input_dim,
            output_dim=len(subgraph),
            **unit_kwargs,
        )
        return generator.emit_source(lowered, naming, self.kernel_only)

    def forward_zero_source(self) -> str:
        """Kernel ``<name>_forward_zero`` evaluating ``y = f(x)``."""
        self.validate()
        with self.timelogger.timed(f"{self.name} forward zero"):
            return self._kernel_source(
                f"{self.name}_forward_zero",
                self.function.evaluate_zero(),
                ZERO_NAMING,
            )

    def forward_one_source(self, sources: list) -> str:
        """Sparse first-order forward sources; see
        :class:`~cujac.codegen.forward_one.SparseForwardOneGenerator`."""
        return SparseForwardOneGenerator(self).forward_one_source(sources)

    def reverse_one_source(self) -> str:
        """Kernel ``<name>_reverse_one`` evaluating ``px = J^T py``.

        The weights ``py`` are the per-thread seed, and the outputs of all
        threads are summed.
        """
        self.validate()
        with self.timelogger.timed(f"{self.name} reverse one"):
            return self._kernel_source(
                f"{self.name}_reverse_one",
                self.function.evaluate_reverse(),
                REVERSE_ONE_NAMING,
                accumulation=AccumulationMode.ACCUMULATE,
                seed_dim=self.output_dim(),
            )

    def jacobian_source(self) -> str:
        """Kernel ``<name>_jacobian`` writing the dense Jacobian row-major.
        """
        self.validate()
        with self.timelogger.timed(f"{self.name} jacobian"):
            return self._kernel_source(
                f"{self.name}_jacobian",
                self.function.evaluate_jacobian(),
                JACOBIAN_NAMING,
            )

    def sparse_jacobian_source(self) -> str:
        """Kernel ``<name>_sparse_jacobian`` plus its sparsity lookup.

        Values are written in the order of the sparsity pattern, which
        ``<name>_sparse_jacobian_sparsity`` returns as flat row and column
        arrays.
        """
        self.validate()
        with self.timelogger.timed(f"{self.name} sparse jacobian"):
            pattern = self.determine_jacobian_sparsity()
            code = self._kernel_source(
                f"{self.name}_sparse_jacobian",
                self.function.evaluate_sparse_jacobian(pattern),
                JACOBIAN_NAMING,
            )
            return code + "\n" + sparsity_2d_source(
                f"{self.name}_sparse_jacobian_sparsity", pattern
            )
