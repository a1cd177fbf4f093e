"""Emission of one generated CUDA function and its host-side glue.

A :class:`CudaFunctionSource` describes the shape of a generated device
function ``f(out, in)`` and writes the pieces that surround its body: the
``extern "C"`` declarations, the device function and its ``__global__``
wrapper, device buffer allocation, host-to-device transfers and the kernel
launch. Each thread of the wrapper evaluates ``f`` once on its own local
input block plus the shared global input.
"""

from enum import Enum
from typing import List

import attrs

from cujac._utils import getype_validator
from cujac.codegen.lowering import (
    LoweredCode,
    VariableNameScheme,
    variable_aliases,
)


class AccumulationMode(Enum):
    """How per-thread outputs are combined by the launch wrapper."""

    NONE = 0
    ACCUMULATE = 1


@attrs.define(frozen=True)
class CudaFunctionSource:
    """Metadata of one generated function plus its emission helpers.

    Attributes
    ----------
    name : str
        Name of the device function. Host helpers append suffixes to it.
    local_input_dim : int
        Per-thread input entries, stored first in the input vector.
    global_input_dim : int
        Input entries shared by all threads, stored after the local ones.
    output_dim : int
        Number of outputs written per thread.
    accumulation : AccumulationMode
        ``NONE`` gives every thread its own output block; ``ACCUMULATE``
        sums all threads' outputs into one block.
    is_forward_one : bool
        Whether the function takes a scalar tangent seed as ``in[1]``.
    seed_dim : int
        Seed entries per thread for functions other than forward-one ones
        (e.g. adjoint weights); zero when no seed is taken.
    """

    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    local_input_dim: int = attrs.field(validator=getype_validator(int, 0))
    global_input_dim: int = attrs.field(validator=getype_validator(int, 0))
    output_dim: int = attrs.field(validator=getype_validator(int, 0))
    accumulation: AccumulationMode = attrs.field(
        default=AccumulationMode.NONE,
        validator=attrs.validators.instance_of(AccumulationMode),
    )
    is_forward_one: bool = attrs.field(default=False)
    seed_dim: int = attrs.field(default=0, validator=getype_validator(int, 0))

    @property
    def input_dim(self) -> int:
        return self.local_input_dim + self.global_input_dim

    @property
    def num_seeds(self) -> int:
        """Seed entries per thread."""
        return 1 if self.is_forward_one else self.seed_dim

    @property
    def accumulated(self) -> bool:
        return self.accumulation is AccumulationMode.ACCUMULATE

    def _buffers(self) -> List[str]:
        buffers = ["output", "local_input", "global_input"]
        if self.num_seeds:
            buffers.append("seed")
        return buffers

    def _pointer(self, buffer: str) -> str:
        return f"dev_{self.name}_{buffer}"

    def _buffer_size(self, buffer: str) -> str:
        threads = f"{self.name}_num_threads"
        if buffer == "output":
            if self.accumulated:
                return f"{self.output_dim}"
            return f"{threads} * {self.output_dim}"
        if buffer == "local_input":
            return f"{threads} * {self.local_input_dim}"
        if buffer == "global_input":
            return f"{self.global_input_dim}"
        return f"{threads} * {self.num_seeds}"

    # ------------------------------------------------------------------ #
    #                              Emitters                              #
    # ------------------------------------------------------------------ #
    def emit_header(self) -> str:
        """Emit the ``extern "C"`` declarations of the host helpers."""
        name = self.name
        lines = [
            f"// {name}: output_dim={self.output_dim}, "
            f"local_input_dim={self.local_input_dim}, "
            f"global_input_dim={self.global_input_dim}",
            'extern "C" {',
            f"MODULE_API CudaFunctionMetaData {name}_meta();",
            f"MODULE_API void {name}_allocate(int num_total_threads);",
            f"MODULE_API void {name}_deallocate();",
            f"MODULE_API void {name}_send_local(const Float *input);",
            f"MODULE_API void {name}_send_global(const Float *input);",
        ]
        if self.num_seeds:
            lines.append(
                f"MODULE_API void {name}_send_seed(const Float *seed);"
            )
        lines.append(
            f"MODULE_API void {name}_launch(int num_blocks, "
            f"int num_threads_per_block, Float *output);"
        )
        lines.append("}")
        return "\n".join(lines) + "\n\n"

    def emit_kernel(
        self,
        lowered: LoweredCode,
        naming: VariableNameScheme = VariableNameScheme(),
        kernel_only: bool = False,
    ) -> str:
        """Emit the device function and, unless ``kernel_only``, its
        ``__global__`` wrapper.

        Parameters
        ----------
        lowered
            Lowered statements of the function body.
        naming
            Array names the statements refer to.
        kernel_only
            Skip the ``__global__`` wrapper.
        """
        name = self.name
        indent = " " * (len(name) + 17)
        body = variable_aliases(naming, bool(self.num_seeds),
                                lowered.work_size)
        if lowered.body:
            body.extend(lowered.body.split("\n"))

        code = "".join(helper + "\n" for helper in lowered.helpers)
        code += (f"__device__ void {name}(Float *const *out,\n"
                 f"{indent}Float const *const *in) {{\n")
        code += "".join(f"  {line}\n" for line in body)
        code += "}\n\n"
        if not kernel_only:
            code += self._emit_global_kernel()
        return code

    def _emit_global_kernel(self) -> str:
        name = self.name
        local_dim = self.local_input_dim
        global_dim = self.global_input_dim
        indent = " " * (len(name) + 24)
        params = [
            "int num_total_threads",
            "Float *output",
            "const Float *local_input",
            "const Float *global_input",
        ]
        if self.num_seeds:
            params.append("const Float *seed")
        lines = [
            f"__global__ void {name}_kernel("
            + f",\n{indent}".join(params) + ") {",
            "  const int i = blockIdx.x * blockDim.x + threadIdx.x;",
            "  if (i >= num_total_threads) {",
            "    return;",
            "  }",
            f"  Float x[{max(self.input_dim, 1)}];",
        ]
        if local_dim:
            lines.extend([
                f"  for (int j = 0; j < {local_dim}; ++j) {{",
                f"    x[j] = local_input[i * {local_dim} + j];",
                "  }",
            ])
        if global_dim:
            lines.extend([
                f"  for (int j = 0; j < {global_dim}; ++j) {{",
                f"    x[{local_dim} + j] = global_input[j];",
                "  }",
            ])
        if self.num_seeds:
            lines.append(
                f"  Float const *in[2] = {{x, &seed[i * {self.num_seeds}]}};"
            )
        else:
            lines.append("  Float const *in[1] = {x};")
        if self.accumulated:
            lines.extend([
                f"  Float y[{max(self.output_dim, 1)}];",
                "  Float *out[1] = {y};",
                f"  {name}(out, in);",
                f"  for (int k = 0; k < {self.output_dim}; ++k) {{",
                "    atomicAdd(&output[k], y[k]);",
                "  }",
            ])
        else:
            lines.extend([
                f"  Float *out[1] = {{&output[i * {self.output_dim}]}};",
                f"  {name}(out, in);",
            ])
        lines.append("}")
        return "\n".join(lines) + "\n\n"

    def emit_allocation_functions(self) -> str:
        """Emit device buffers plus metadata, allocate and free helpers."""
        name = self.name
        lines = [f"static int {name}_num_threads = 0;"]
        for buffer in self._buffers():
            lines.append(f"static Float *{self._pointer(buffer)} = nullptr;")
        accumulated = "true" if self.accumulated else "false"
        lines.extend([
            "",
            'extern "C" {',
            f"MODULE_API CudaFunctionMetaData {name}_meta() {{",
            "  CudaFunctionMetaData meta;",
            f"  meta.output_dim = {self.output_dim};",
            f"  meta.local_input_dim = {self.local_input_dim};",
            f"  meta.global_input_dim = {self.global_input_dim};",
            f"  meta.accumulated_output = {accumulated};",
            "  return meta;",
            "}",
            "",
            f"MODULE_API void {name}_allocate(int num_total_threads) {{",
            f"  {name}_num_threads = num_total_threads;",
        ])
        for buffer in self._buffers():
            lines.append(
                f"  allocate_device((void **)&{self._pointer(buffer)}, "
                f"{self._buffer_size(buffer)} * sizeof(Float));"
            )
        lines.extend(["}", "", f"MODULE_API void {name}_deallocate() {{"])
        for buffer in self._buffers():
            lines.append(f"  cudaFree({self._pointer(buffer)});")
            lines.append(f"  {self._pointer(buffer)} = nullptr;")
        lines.extend([f"  {name}_num_threads = 0;", "}", "}"])
        return "\n".join(lines) + "\n\n"

    def emit_send_functions(self) -> str:
        """Emit the host-to-device transfer helpers."""
        name = self.name
        transfers = [
            ("send_local", "input", "local_input"),
            ("send_global", "input", "global_input"),
        ]
        if self.num_seeds:
            transfers.append(("send_seed", "seed", "seed"))
        lines = ['extern "C" {']
        for suffix, argument, buffer in transfers:
            lines.extend([
                f"MODULE_API void {name}_{suffix}(const Float *{argument}) {{",
                f"  cudaMemcpy({self._pointer(buffer)}, {argument},",
                f"             {self._buffer_size(buffer)} * sizeof(Float),",
                "             cudaMemcpyHostToDevice);",
                "}",
            ])
        lines.append("}")
        return "\n".join(lines) + "\n\n"

    def emit_kernel_launch(self) -> str:
        """Emit the launch wrapper copying outputs back to the host."""
        name = self.name
        output = self._pointer("output")
        output_size = self._buffer_size("output")
        args = [f"{name}_num_threads"]
        args.extend(self._pointer(buffer) for buffer in self._buffers())
        lines = [
            'extern "C" {',
            f"MODULE_API void {name}_launch(int num_blocks, "
            f"int num_threads_per_block, Float *output) {{",
        ]
        if self.accumulated:
            lines.append(
                f"  cudaMemset({output}, 0, {output_size} * sizeof(Float));"
            )
        lines.extend([
            f"  {name}_kernel<<<num_blocks, num_threads_per_block>>>(",
            "      " + ", ".join(args) + ");",
            "  cudaDeviceSynchronize();",
            f"  cudaMemcpy(output, {output}, {output_size} * sizeof(Float),",
            "             cudaMemcpyDeviceToHost);",
            "}",
            "}",
        ])
        return "\n".join(lines) + "\n"

    def emit_source(
        self,
        lowered: LoweredCode,
        naming: VariableNameScheme = VariableNameScheme(),
        kernel_only: bool = False,
    ) -> str:
        """Emit the complete unit text.

        Not kernel-only: header, kernel, allocation, transfer and launch
        sections, in that order. Kernel-only: the device function alone.
        """
        if kernel_only:
            return self.emit_kernel(lowered, naming, kernel_only=True)
        return (self.emit_header()
                + self.emit_kernel(lowered, naming)
                + self.emit_allocation_functions()
                + self.emit_send_functions()
                + self.emit_kernel_launch())
