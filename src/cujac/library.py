"""Assemble generated models into one CUDA library and compile it.

Published Classes
-----------------
:class:`CudaLibraryProcessor`
    Generates the sources of one or more models, saves them and drives
    ``nvcc`` to build a shared library.

Notes
-----
A processor serves one build session. The generated directory holds every
model unit, ``util.h``, ``model_info.h`` and the aggregator
``<library>.cu``, which includes all of them in generation order.
"""

import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from cujac._utils import find_exe, is_windows, shared_library_extension
from cujac.errors import (
    CodegenConfigurationError,
    CompilationError,
    SourcesNotGeneratedError,
)
from cujac.time_logger import TimeLogger, default_timelogger


DEFAULT_COMPILER_PATH = "/usr/bin/nvcc"

UTIL_HEADER_BODY = r"""#ifdef _WIN32
#define MODULE_API __declspec(dllexport)
#else
#define MODULE_API
#endif

struct CudaFunctionMetaData {
  int output_dim;
  int local_input_dim;
  int global_input_dim;
  bool accumulated_output;
};

void allocate(void **x, size_t size) {
  cudaError status = cudaMallocHost(x, size);
  if (status != cudaSuccess) {
    fprintf(stderr, "Error %i (%s) while allocating %zu units of CUDA memory: %s.\n",
            status, cudaGetErrorName(status), size, cudaGetErrorString(status));
    exit((int)status);
  }
}

void allocate_device(void **x, size_t size) {
  cudaError status = cudaMalloc(x, size);
  if (status != cudaSuccess) {
    fprintf(stderr, "Error %i (%s) while allocating %zu units of CUDA device memory: %s.\n",
            status, cudaGetErrorName(status), size, cudaGetErrorString(status));
    exit((int)status);
  }
}

#endif  // CUDA_UTILS_H
"""


class CudaLibraryProcessor:
    """Generate, save and compile the sources of a set of models.

    Parameters
    ----------
    model
        First model of the library; it stays last when further models
        are added, as the library's main model.
    library_name
        Base name of the aggregator and the shared library. Defaults to
        the model's name.
    find_compiler
        Look ``nvcc`` up on ``PATH``.
    compiler_path
        Explicit compiler path; takes precedence over the lookup.
    timelogger
        Receives generation, save and compile diagnostics.

    Attributes
    ----------
    debug_mode : bool
        Build with device debug information (``-G -lineinfo``). This
        changes only the ``nvcc`` flags; the generated sources are the
        same as in a release build and contain no extra debug printing.
    optimization_level : int
        ``ptxas`` optimization level.
    sources : list of (str, str)
        Generated ``(file name, text)`` units in generation order.
    gen_srcs : list of str
        File names of the mode units the aggregator includes.

    Raises
    ------
    CodegenConfigurationError
        If ``find_compiler`` is set and ``nvcc`` is not on ``PATH``.
    """

    def __init__(
        self,
        model,
        library_name: str = "",
        find_compiler: bool = True,
        compiler_path: Optional[str] = None,
        timelogger: Optional[TimeLogger] = None,
    ) -> None:
        self.models = [model]
        self.library_name = library_name or model.name
        if compiler_path is None:
            if find_compiler:
                compiler_path = find_exe("nvcc")
            else:
                compiler_path = DEFAULT_COMPILER_PATH
        if not compiler_path:
            raise CodegenConfigurationError(
                'NVIDIA CUDA Compiler (nvcc) could not be found. Make sure '
                '"nvcc" is accessible from the system path.'
            )
        self.compiler_path = str(compiler_path)
        self.timelogger = timelogger or default_timelogger
        self.debug_mode = False
        self.gen_srcs: List[str] = []
        self.sources: List[Tuple[str, str]] = []
        self._optimization_level = 0
        self._src_dir: Optional[Path] = None

    @property
    def optimization_level(self) -> int:
        """``ptxas`` optimization level, 0 to 3."""
        return self._optimization_level

    @optimization_level.setter
    def optimization_level(self, level: int) -> None:
        if (not isinstance(level, int) or isinstance(level, bool)
                or not 0 <= level <= 3):
            raise ValueError(
                f"optimization_level must be 0, 1, 2 or 3, got {level!r}"
            )
        self._optimization_level = level

    @property
    def src_dir(self) -> Path:
        """Directory the sources are saved to, ``<library>_srcs`` unless
        set."""
        if self._src_dir is None:
            return Path(f"{self.library_name}_srcs")
        return self._src_dir

    @src_dir.setter
    def src_dir(self, path) -> None:
        self._src_dir = None if path is None else Path(path)

    def add_model(self, model, prepend: bool = True) -> None:
        """Register another model.

        Parameters
        ----------
        model
            Model to add.
        prepend
            Put the model first. Otherwise insert it just before the last
            registered model, which remains the main model.
        """
        if prepend:
            self.models.insert(0, model)
        elif not self.models:
            self.models.append(model)
        else:
            self.models.insert(len(self.models) - 1, model)

    # ------------------------------------------------------------------ #
    #                             Generation                             #
    # ------------------------------------------------------------------ #
    def generate_code(self) -> None:
        """Generate every requested mode of every model into ``sources``.

        Previous results are discarded first, so repeated calls on an
        unchanged processor produce identical sources. Every model is
        validated before anything is generated. When a later model fails,
        the units generated before the failure stay in ``sources``.
        """
        self.gen_srcs = []
        self.sources = []
        for model in self.models:
            model.validate()

        with self.timelogger.timed("library code generation"):
            self.sources.append(("util.h", self.util_header_src()))
            self.sources.append(("model_info.h",
                                 self.model_info_header_src()))
            for model in self.models:
                self._generate_model(model)

            main_file = '#include "util.h"\n#include "model_info.h"\n\n'
            main_file += "".join(f'#include "{src}"\n'
                                 for src in self.gen_srcs)
            self.sources.append((f"{self.library_name}.cu", main_file))

    def _generate_model(self, model) -> None:
        extension = "cuh" if model.kernel_only else "cu"
        modes = [
            (model.create_forward_zero, "forward_zero",
             model.forward_zero_source),
            (model.create_sparse_forward_one, "forward_one",
             lambda: model.forward_one_source(self.sources)),
            (model.create_reverse_one, "reverse_one",
             model.reverse_one_source),
            (model.create_jacobian, "jacobian",
             model.jacobian_source),
            (model.create_sparse_jacobian, "sparse_jacobian",
             model.sparse_jacobian_source),
        ]
        for requested, mode, generate in modes:
            if not requested:
                continue
            src_name = f"{model.name}_{mode}.{extension}"
            self.sources.append((src_name, generate()))
            self.gen_srcs.append(src_name)

    def util_header_src(self) -> str:
        """Shared header: ``Float`` typedef, export macro, metadata struct
        and checked allocation helpers."""
        base_type = self.models[0].base_type_name
        return (
            "#ifndef CUDA_UTILS_H\n#define CUDA_UTILS_H\n\n"
            "#include <math.h>\n#include <stdio.h>\n\n"
            f"typedef {base_type} Float;\n\n"
            + UTIL_HEADER_BODY
        )

    def model_info_header_src(self) -> str:
        """Manifest listing the models that are not kernel-only."""
        accessible = [model.name for model in self.models
                      if not model.kernel_only]
        lines = [
            "#ifndef MODEL_INFO_H",
            "#define MODEL_INFO_H",
            "",
            'extern "C" {',
            "MODULE_API void model_info(char const *const **names, "
            "int *count) {",
        ]
        if accessible:
            lines.append("  static const char *const models[] = {")
            lines.append(",\n".join(f'    "{name}"' for name in accessible))
            lines.append("  };")
        else:
            lines.append("  static const char *const models[1] = {0};")
        lines.extend([
            "  *names = models;",
            f"  *count = {len(accessible)};",
            "}",
            "}",
            "#endif  // MODEL_INFO_H",
        ])
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------ #
    #                              Building                              #
    # ------------------------------------------------------------------ #
    def save_sources(self) -> Path:
        """Write every generated unit to :attr:`src_dir`.

        Returns
        -------
        pathlib.Path
            The directory written to.

        Raises
        ------
        SourcesNotGeneratedError
            If :meth:`generate_code` has not produced any unit.
        """
        if not self.sources:
            raise SourcesNotGeneratedError(
                "No source files have been generated yet. Ensure "
                "`generate_code()` is called before saving the code."
            )
        src_dir = self.src_dir
        src_dir.mkdir(parents=True, exist_ok=True)
        self.timelogger.progress(
            "save sources", f"Saving source files at {src_dir.resolve()}"
        )
        with self.timelogger.timed("save sources", category="io"):
            for filename, text in self.sources:
                with open(src_dir / filename, "w", encoding="utf-8") as f:
                    f.write(text)
        return src_dir

    def library_file_name(self) -> str:
        return f"{self.library_name}.{shared_library_extension()}"

    def compile_command(self) -> List[str]:
        """Argument list of the ``nvcc`` invocation."""
        command = [
            self.compiler_path,
            f"--ptxas-options=-O{self.optimization_level},-v",
            "--ptxas-options=-v",
            "-rdc=true",
        ]
        if self.debug_mode:
            command.extend(["-G", "-lineinfo"])
        if not is_windows():
            command.extend(["--compiler-options", "-fPIC"])
        command.extend([
            "-o", self.library_file_name(),
            "--shared",
            str(self.src_dir / f"{self.library_name}.cu"),
        ])
        return command

    def create_library(self) -> str:
        """Compile the saved sources into a shared library.

        The call blocks until the compiler exits.

        Returns
        -------
        str
            File name of the built library.

        Raises
        ------
        CompilationError
            If the compiler exits with a nonzero status.
        """
        command = self.compile_command()
        self.timelogger.progress(
            "compile library",
            f"Compiling CUDA library via {self.compiler_path}\n\n"
            + " ".join(command),
        )
        self.timelogger.start_event("compile library", category="compile")
        try:
            process = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
            )
        finally:
            duration = self.timelogger.stop_event("compile library")
        if duration is not None:
            self.timelogger.progress(
                "compile library",
                f"CUDA compilation process terminated after "
                f"{duration:.3f} seconds.",
            )
        if process.returncode != 0:
            raise CompilationError(process.returncode, command,
                                   process.stdout or "")
        return self.library_file_name()
