import pytest
import sympy as sp

from cujac.codegen.function_source import (
    AccumulationMode,
    CudaFunctionSource,
)
from cujac.codegen.lowering import LoweredCode, VariableNameScheme, lower
from cujac.symbolic.function import DerivativeSubgraph


@pytest.fixture(scope="function")
def lowered():
    x = sp.Symbol("x")
    subgraph = DerivativeSubgraph(inputs=[x], outputs=[sp.sin(x)])
    return lower(subgraph, function_name="f")


def _sections_in_order(text, markers):
    positions = [text.index(marker) for marker in markers]
    return positions == sorted(positions)


class TestCudaFunctionSource:
    def test_validation(self):
        with pytest.raises(ValueError):
            CudaFunctionSource("f", -1, 0, 1)
        with pytest.raises(TypeError):
            CudaFunctionSource("f", 1.5, 0, 1)
        with pytest.raises(TypeError):
            CudaFunctionSource("f", 1, 0, 1, accumulation="sum")

    def test_frozen(self):
        unit = CudaFunctionSource("f", 2, 1, 3)
        with pytest.raises(AttributeError):
            unit.output_dim = 4

    def test_dimensions(self):
        unit = CudaFunctionSource("f", 2, 1, 3, is_forward_one=True)
        assert unit.input_dim == 3
        assert unit.num_seeds == 1
        assert CudaFunctionSource("g", 2, 1, 3, seed_dim=3).num_seeds == 3
        assert CudaFunctionSource("h", 2, 1, 3).num_seeds == 0

    def test_header(self):
        header = CudaFunctionSource("f", 2, 1, 3).emit_header()
        assert 'extern "C" {' in header
        assert "MODULE_API CudaFunctionMetaData f_meta();" in header
        assert "MODULE_API void f_allocate(int num_total_threads);" in header
        assert "f_send_seed" not in header
        seeded = CudaFunctionSource("f", 2, 1, 3,
                                    is_forward_one=True).emit_header()
        assert "MODULE_API void f_send_seed(const Float *seed);" in seeded

    def test_device_function(self, lowered):
        unit = CudaFunctionSource("f", 1, 0, 1)
        code = unit.emit_kernel(lowered, kernel_only=True)
        assert code.startswith(
            "__device__ void f(Float *const *out,\n"
            "                  Float const *const *in) {\n"
            "  Float const *x = in[0];\n"
            "  Float *dy = out[0];\n"
        )
        assert "  dy[0] = sin(x[0]);\n" in code
        assert "__global__" not in code

    def test_forward_one_kernel_reads_seed(self, lowered):
        unit = CudaFunctionSource("f", 1, 0, 1, is_forward_one=True)
        code = unit.emit_kernel(lowered)
        assert "  Float const *dx = in[1];\n" in code
        assert "__global__ void f_kernel(int num_total_threads," in code
        assert "const Float *seed) {" in code
        assert "Float const *in[2] = {x, &seed[i * 1]};" in code

    def test_global_inputs_follow_local(self, lowered):
        code = CudaFunctionSource("f", 2, 3, 1).emit_kernel(lowered)
        assert "Float x[5];" in code
        assert "x[j] = local_input[i * 2 + j];" in code
        assert "x[2 + j] = global_input[j];" in code
        assert "Float *out[1] = {&output[i * 1]};" in code

    def test_helpers_precede_function(self):
        lowered = LoweredCode(body="f_part0(out, in, v);",
                              helpers=("__device__ void f_part0() {}\n",),
                              work_size=2)
        code = CudaFunctionSource("f", 1, 0, 1).emit_kernel(
            lowered, kernel_only=True
        )
        assert code.index("f_part0() {}") < code.index("__device__ void f(")
        assert "  Float v[2];\n" in code

    def test_accumulated_output(self, lowered):
        unit = CudaFunctionSource("f", 1, 0, 1,
                                  accumulation=AccumulationMode.ACCUMULATE)
        kernel = unit.emit_kernel(lowered)
        assert "atomicAdd(&output[k], y[k]);" in kernel
        launch = unit.emit_kernel_launch()
        assert "cudaMemset(dev_f_output, 0, 1 * sizeof(Float));" in launch
        alloc = unit.emit_allocation_functions()
        assert "meta.accumulated_output = true;" in alloc
        assert ("allocate_device((void **)&dev_f_output, "
                "1 * sizeof(Float));") in alloc

    def test_allocation_functions(self):
        alloc = CudaFunctionSource("f", 2, 1, 3).emit_allocation_functions()
        assert "static Float *dev_f_local_input = nullptr;" in alloc
        assert "meta.output_dim = 3;" in alloc
        assert "meta.local_input_dim = 2;" in alloc
        assert "meta.global_input_dim = 1;" in alloc
        assert "meta.accumulated_output = false;" in alloc
        assert ("allocate_device((void **)&dev_f_output, "
                "f_num_threads * 3 * sizeof(Float));") in alloc
        assert "cudaFree(dev_f_global_input);" in alloc
        assert "dev_f_seed" not in alloc

    def test_send_functions(self):
        send = CudaFunctionSource("f", 2, 1, 3,
                                  seed_dim=2).emit_send_functions()
        assert "MODULE_API void f_send_local(const Float *input) {" in send
        assert "MODULE_API void f_send_global(const Float *input) {" in send
        assert "MODULE_API void f_send_seed(const Float *seed) {" in send
        assert "f_num_threads * 2 * sizeof(Float)," in send
        assert send.count("cudaMemcpyHostToDevice") == 3

    def test_launch(self):
        launch = CudaFunctionSource("f", 2, 1, 3).emit_kernel_launch()
        assert "f_kernel<<<num_blocks, num_threads_per_block>>>(" in launch
        assert ("f_num_threads, dev_f_output, dev_f_local_input, "
                "dev_f_global_input);") in launch
        assert "cudaMemset" not in launch
        assert "cudaMemcpyDeviceToHost" in launch

    def test_full_source_order(self, lowered):
        unit = CudaFunctionSource("f", 1, 0, 1, is_forward_one=True)
        text = unit.emit_source(lowered)
        assert _sections_in_order(text, [
            "MODULE_API void f_launch(int num_blocks",
            "__device__ void f(",
            "__global__ void f_kernel(",
            "MODULE_API void f_allocate(int num_total_threads) {",
            "MODULE_API void f_send_local(const Float *input) {",
            "f_kernel<<<",
        ])

    def test_kernel_only_source(self, lowered):
        unit = CudaFunctionSource("f", 1, 0, 1)
        text = unit.emit_source(lowered, VariableNameScheme(),
                                kernel_only=True)
        assert text == unit.emit_kernel(lowered, kernel_only=True)
        assert "extern" not in text
