"""
wgpu_graph: graph compiler and reverse-mode autodiff on wgpu compute shaders.

Operators build a symbolic graph of memoized builders. Compiling a root
partitions it into WGSL kernels (one per op class and iteration size),
generates a matching backward kernel for each, and runs them through
wgpu-py on Vulkan/Metal/D3D12.

Modules:
    graph         - TensorGraph: tensors, inputs, compile, run
    elementwise   - add/sub/mult/div with broadcasting, activations, dropout
    linalg        - matmul, dot, transpose
    reductions    - sum, mean, softmax
    normalization - batch_norm, layer_norm
    losses        - binary_cross_entropy, mean_squared_error, cross_entropy
    shape_ops     - reshape
    backward      - backward kernel generation
"""

from wgpu_graph.errors import (
    GraphError, ShapeMismatchError, BindingResolutionError,
    InputSizeMismatchError, CompileError, DeviceError,
)

from wgpu_graph.node import Builder, Node, OpClass, constant, memo, resolve

from wgpu_graph.elementwise import (
    add, sub, mult, div,
    relu, leaky_relu, sigmoid, tanh, exp, log, sqrt, pow2, pow3, neg,
    dropout,
)
from wgpu_graph.linalg import matmul, dot, transpose
from wgpu_graph.reductions import sum, mean, softmax  # noqa: A004
from wgpu_graph.normalization import batch_norm, layer_norm
from wgpu_graph.losses import binary_cross_entropy, mean_squared_error, cross_entropy
from wgpu_graph.shape_ops import reshape

from wgpu_graph.tensor import Tensor, Input
from wgpu_graph.graph import TensorGraph, RunResult, GraphPlan, build_plan
from wgpu_graph.printing import print_ast, format_kernels
from wgpu_graph.device import get_device, has_adapter

__all__ = [
    # Errors
    "GraphError", "ShapeMismatchError", "BindingResolutionError",
    "InputSizeMismatchError", "CompileError", "DeviceError",
    # Graph model
    "Builder", "Node", "OpClass", "constant", "memo", "resolve",
    # Operators
    "add", "sub", "mult", "div",
    "relu", "leaky_relu", "sigmoid", "tanh", "exp", "log", "sqrt", "pow2", "pow3", "neg",
    "dropout",
    "matmul", "dot", "transpose",
    "sum", "mean", "softmax",
    "batch_norm", "layer_norm",
    "binary_cross_entropy", "mean_squared_error", "cross_entropy",
    "reshape",
    # Training API
    "Tensor", "Input", "TensorGraph", "RunResult", "GraphPlan", "build_plan",
    "print_ast", "format_kernels",
    "get_device", "has_adapter",
]
