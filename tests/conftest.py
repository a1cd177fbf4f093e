import numpy as np
import pytest
import sympy as sp

from cujac.codegen.model_source import CudaModelSourceGen
from cujac.library import CudaLibraryProcessor
from cujac.symbolic.function import SymbolicFunction
from cujac.time_logger import TimeLogger

np.set_printoptions(linewidth=120, precision=12)


class softplus(sp.Function):
    """Smooth ramp evaluated by external device code."""

    nargs = 1

    def fdiff(self, argindex=1):
        x = self.args[0]
        return 1 / (1 + sp.exp(-x))


# --------------------------------------------------------------------------- #
#                              Function fixtures                              #
# --------------------------------------------------------------------------- #
@pytest.fixture(scope="function")
def quiet_logger():
    return TimeLogger(verbosity=None)


@pytest.fixture(scope="function")
def two_column_function():
    """Domain 3, range 2, nonzeros (0, 0), (1, 0) and (1, 2)."""
    x0, x1, x2 = sp.symbols("x0:3")
    return SymbolicFunction(inputs=[x0, x1, x2], outputs=[x0**2, x0 * x2])


@pytest.fixture(scope="function")
def empty_sparsity_function():
    """Outputs that do not depend on any input."""
    return SymbolicFunction(inputs="x0:2",
                            outputs=[sp.Integer(3), sp.Float(0.5)])


@pytest.fixture(scope="function")
def auxiliary_function():
    """Four inputs, three outputs, two chained auxiliaries."""
    x0, x1, x2, x3 = sp.symbols("x0:4")
    a, b = sp.symbols("a b")
    return SymbolicFunction(
        inputs=[x0, x1, x2, x3],
        outputs=[a * x2, b, sp.exp(x1)],
        auxiliaries=[(b, a + x3**2), (a, sp.sin(x0) * x1)],
    )


@pytest.fixture(scope="function")
def atomic_function():
    """Auxiliary function that applies an atomic function."""
    x0, x1, x2 = sp.symbols("x0:3")
    s = sp.Symbol("s")
    return SymbolicFunction(
        inputs=[x0, x1, x2],
        outputs=[s * x1, s + x2**3],
        auxiliaries=[(s, softplus(x0 * x2))],
        atomic_functions=[softplus],
    )


# --------------------------------------------------------------------------- #
#                               Model fixtures                                #
# --------------------------------------------------------------------------- #
@pytest.fixture(scope="function")
def model_override(request):
    return request.param if hasattr(request, "param") else {}


@pytest.fixture(scope="function")
def two_column_model(two_column_function, quiet_logger, model_override):
    settings = {"name": "scen_a", "function": two_column_function,
                "timelogger": quiet_logger}
    settings.update(model_override)
    return CudaModelSourceGen(**settings)


@pytest.fixture(scope="function")
def auxiliary_model(auxiliary_function, quiet_logger):
    return CudaModelSourceGen(name="aux", function=auxiliary_function,
                              global_input_dim=1, timelogger=quiet_logger)


@pytest.fixture(scope="function")
def processor(two_column_model, quiet_logger, tmp_path):
    proc = CudaLibraryProcessor(
        two_column_model,
        library_name="testlib",
        find_compiler=False,
        timelogger=quiet_logger,
    )
    proc.src_dir = tmp_path / "srcs"
    return proc
