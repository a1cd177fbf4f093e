"""
cujac: sparse forward-mode CUDA kernel generation
"""

from importlib.metadata import version

from cujac.symbolic.function import DerivativeSubgraph, SymbolicFunction  # noqa
from cujac.codegen.sparsity import SparsityPattern, partition_columns  # noqa
from cujac.codegen.model_source import CudaModelSourceGen  # noqa
from cujac.library import CudaLibraryProcessor  # noqa
from cujac.settings import EmitterSettings  # noqa
from cujac.errors import (  # noqa
    CodegenConfigurationError,
    CompilationError,
    SourcesNotGeneratedError,
)
from cujac.time_logger import TimeLogger, default_timelogger  # noqa

__all__ = [
    "DerivativeSubgraph",
    "SymbolicFunction",
    "SparsityPattern",
    "partition_columns",
    "CudaModelSourceGen",
    "CudaLibraryProcessor",
    "EmitterSettings",
    "CodegenConfigurationError",
    "CompilationError",
    "SourcesNotGeneratedError",
    "TimeLogger",
    "default_timelogger",
]

try:
    __version__ = version("cujac")
except ImportError:
    # Package is not installed
    __version__ = "unknown"
