"""
Whole-graph compiler and the TensorGraph training API.

compile(root, output_shape):
  1. Invokes the root builder in a fresh arena with a Regular root context;
     operators partition themselves into kernel contexts as they generate
     code.
  2. Linearizes: a dependency-first traversal assigns every inline node a
     depth (the number of hand-offs on its longest input path). A context
     whose nodes land at several depths is split into one dispatch per
     depth, with values crossing the split reloaded from a hand-off buffer.
     Dispatches run in depth order.
  3. Generates one backward kernel per forward kernel.
  4. Allocates device buffers and builds the Kernel objects.

run() records every forward kernel (with the hand-off copies feeding it),
then the backward kernels, into one command encoder and submits it once.
The output and every parameter gradient edge are copied into a single
readback buffer, so each run maps device memory once.
"""

import logging
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import wgpu

from wgpu_graph.backward import BackwardContext, Edge, backpass, fold_gradient
from wgpu_graph.config import OUTPUT_BUFFER, READBACK_BUFFER
from wgpu_graph.context import KernelContext
from wgpu_graph.device import get_device
from wgpu_graph.errors import CompileError, InputSizeMismatchError
from wgpu_graph.kernel import Kernel, create_storage_buffer
from wgpu_graph.node import Arena, Node, OpClass, as_shape, buffer_root, numel, read, resolve
from wgpu_graph.tensor import Input, Leaf, Tensor

logger = logging.getLogger(__name__)


class RunResult(NamedTuple):
    """Forward output and per-parameter gradients of one run."""

    forward: np.ndarray
    gradients: Dict[str, np.ndarray]


# ============================================================================
# Linearization
# ============================================================================

def _ready_depth(dep: Node, depth: Dict[Node, int]) -> int:
    """Earliest dispatch depth at which ``dep`` can be read."""
    if dep.constant:
        return 0
    if dep.buffer:
        root = buffer_root(dep)
        if root.producer is not None:
            return depth[root.producer] + 1
        return 0
    return depth[dep]


def linearize(output: Node) -> List[KernelContext]:
    """
    Order the contexts reachable from ``output`` into a dispatch list.

    Rebuilds each context's code and bindings from scratch in dependency
    order: node statements first, then the relays writing hand-off
    buffers. Returns contexts in execution order.
    """
    order: List[Node] = []
    handoffs: List[Node] = []
    visited = set()

    def _visit(node: Node):
        if node in visited:
            return
        visited.add(node)
        for dep in node.dependencies:
            _visit(dep)
        if node.inline:
            order.append(node)
        elif node.producer is not None:
            handoffs.append(node)

    _visit(output)

    # Depth of each inline node
    depth: Dict[Node, int] = {}
    for node in order:
        depth[node] = max((_ready_depth(d, depth) for d in node.dependencies), default=0)

    # One dispatch per (context, depth)
    stages: Dict[tuple, KernelContext] = {}
    for node in order:
        owner = node.context
        key = (owner, depth[node])
        if key not in stages:
            first = not any(c is owner for c, _ in stages)
            stage = owner if first else owner.split()
            stage.depth = depth[node]
            stages[key] = stage
        node.context = stages[key]
    final = output.context
    contexts = sorted(set(stages.values()), key=lambda c: (c.depth, c is final, c.id))
    for context in contexts:
        context.reset()

    # Values consumed inline by a later dispatch of the same context
    reloads = []
    for node in order:
        for dep in node.dependencies:
            if dep.inline and dep.context is not node.context:
                placeholder = dep.context.arena.crossings.get(dep) or dep.context.handoff(dep)
                if (node.context, dep) not in [(c, d) for c, d, _ in reloads]:
                    reloads.append((node.context, dep, placeholder))
                if placeholder not in handoffs:
                    handoffs.append(placeholder)

    for node in order:
        node.context.append(node)
    for context, dep, placeholder in reloads:
        context.reload(dep, placeholder)
    for placeholder in handoffs:
        producer = placeholder.producer.context
        producer.add_output(f"{placeholder.buffer_name}_out")
        producer.code.append(placeholder.relay)

    logger.debug("Linearized %d nodes into %d dispatches", len(order), len(contexts))
    return contexts


# ============================================================================
# Plan
# ============================================================================

def _output_backward(node, grad, bw):
    bw.accumulate(node, 0, grad)


class GraphPlan:
    """Everything compile() derives without touching the device."""

    def __init__(self, arena: Arena, output: Node, contexts: List[KernelContext],
                 backward: List[BackwardContext], output_shape):
        self.arena = arena
        self.output = output
        self.contexts = contexts
        self.backward = backward
        self.output_shape = output_shape
        self.sources = [c.generate_kernel() for c in contexts]
        self.backward_sources = [bw.generate_kernel() for bw in backward]

    def leaf_edges(self) -> Dict[str, List[Edge]]:
        """Gradient edges aimed at each parameter, by tensor name."""
        edges: Dict[str, List[Edge]] = {}
        for bw in self.backward:
            for target, edge in bw.produced:
                if target.leaf is not None:
                    edges.setdefault(target.leaf.name, []).append(edge)
        return edges


def build_plan(root, output_shape) -> GraphPlan:
    """Run forward codegen, linearization and the backward pass for ``root``."""
    output_shape = as_shape(output_shape)
    size = numel(output_shape)
    arena = Arena()
    context = KernelContext(arena, OpClass.REGULAR, size)
    node = resolve(root)(context)
    if node.size != size:
        raise CompileError(
            f"Root produces {list(node.shape)} ({node.size} elements), "
            f"but the output shape {list(output_shape)} holds {size}"
        )
    final = context.gen(node)
    output = context.emit("output", OUTPUT_BUFFER, f"{OUTPUT_BUFFER}[index] = {read(final)};",
                          OpClass.REGULAR, output_shape, final)
    output.backward_rule = _output_backward

    contexts = linearize(output)
    output.context.add_output(OUTPUT_BUFFER)
    backward = backpass(output, contexts)
    return GraphPlan(arena, output, contexts, backward, output_shape)


# ============================================================================
# Tensor Graph
# ============================================================================

class TensorGraph:
    """
    Owner of parameters, inputs and compiled kernels.

    Usage:
        g = TensorGraph()
        X = g.input([4, 2], "X").set(data)
        W = g.tensor([2, 1], "W").xavier_init()
        g.compile(sigmoid(matmul(X, W)), [4, 1])
        forward, gradients = g.run()
        W.learn(0.1)
    """

    def __init__(self, device=None, seed: Optional[int] = None):
        """
        Args:
            device: wgpu device; defaults to the shared device on first compile
            seed: Seed for the random initializers
        """
        self._device = device
        self.rng = np.random.default_rng(seed)
        self.tensors: Dict[str, Tensor] = {}
        self.inputs: Dict[str, Input] = {}
        self.input_data: Dict[str, np.ndarray] = {}
        self.gradient_data: Dict[str, np.ndarray] = {}
        self.buffers: Dict[str, wgpu.GPUBuffer] = {}
        self.kernels: List[Kernel] = []
        self.backward_kernels: List[Kernel] = []
        self.plan: Optional[GraphPlan] = None
        self.output_shape = None
        self.output_size = 0
        self._output = None
        self._edge_slots: List[Tuple[str, Edge, int]] = []

    @property
    def device(self):
        if self._device is None:
            self._device = get_device()
        return self._device

    # ---- Leaves ----
    def _register(self, leaf: Leaf) -> Leaf:
        if leaf.name in self.tensors or leaf.name in self.inputs:
            raise ValueError(f"A tensor named '{leaf.name}' already exists")
        registry = self.inputs if isinstance(leaf, Input) else self.tensors
        registry[leaf.name] = leaf
        self.input_data[leaf.name] = np.zeros(leaf.size, dtype=np.float32)
        if not isinstance(leaf, Input):
            self.gradient_data[leaf.name] = np.zeros(leaf.size, dtype=np.float32)
        return leaf

    def tensor(self, shape, name: str) -> Tensor:
        """Create a trainable parameter, zero-initialized."""
        return self._register(Tensor(self, shape, name))

    def input(self, shape, name: str) -> Input:
        """Create an external input, zero-initialized."""
        return self._register(Input(self, shape, name))

    def _leaf(self, name: str) -> Leaf:
        leaf = self.tensors.get(name) or self.inputs.get(name)
        if leaf is None:
            raise KeyError(f"No tensor or input named '{name}'")
        return leaf

    def update_tensor(self, name: str, data):
        """Replace a leaf's values on the host and, once compiled, on the device."""
        leaf = self._leaf(name)
        array = np.ascontiguousarray(np.asarray(data, dtype=np.float32).reshape(-1))
        if array.size != leaf.size:
            raise InputSizeMismatchError(name, leaf.size, array.size)
        self.input_data[name] = array.copy()
        buf = self.buffers.get(leaf.buffer_name)
        if buf is not None:
            self.device.queue.write_buffer(buf, 0, self.input_data[name])

    update_input = update_tensor

    # ---- Compile ----
    def output(self, builder):
        """Mark ``builder`` as the graph output and return it."""
        self._output = resolve(builder)
        return self._output

    def compile(self, root=None, output_shape=None) -> GraphPlan:
        """
        Compile ``root`` (default: the builder passed to ``output``).

        Any previous kernels and buffers are released first.
        """
        root = root if root is not None else self._output
        if root is None:
            raise CompileError("Nothing to compile: pass a root or call output() first")
        if output_shape is None:
            output_shape = resolve(root).shape

        plan = build_plan(root, output_shape)
        self._release()
        self.plan = None
        self._edge_slots = []
        device = self.device

        try:
            for leaf in list(self.tensors.values()) + list(self.inputs.values()):
                self.buffers[leaf.buffer_name] = create_storage_buffer(
                    device, leaf.size, self.input_data[leaf.name])

            for context, source in zip(plan.contexts, plan.sources):
                for name in context.inputs:
                    if name not in self.buffers and name in plan.arena.placeholders:
                        placeholder = plan.arena.placeholders[name]
                        self.buffers[name] = create_storage_buffer(device, placeholder.size)
                kernel = Kernel(device, f"forward_{context.id}", source, list(context.inputs),
                                {name: context.size for name in context.outputs},
                                context.size, self.buffers)
                self.buffers.update(kernel.outputs)
                self.kernels.append(kernel)

            for bw, source in zip(plan.backward, plan.backward_sources):
                if not bw.outputs:
                    continue
                kernel = Kernel(device, f"backward_{bw.context.id}", source, list(bw.inputs),
                                bw.output_sizes, bw.threads, self.buffers)
                self.buffers.update(kernel.outputs)
                self.backward_kernels.append(kernel)

            self._allocate_readback(plan)
        except Exception:
            # A half-built graph must not be runnable
            self._release()
            self._edge_slots = []
            raise

        self.plan = plan
        self.output_shape = plan.output_shape
        self.output_size = numel(plan.output_shape)
        logger.info("Compiled %d forward and %d backward kernels",
                    len(self.kernels), len(self.backward_kernels))
        return plan

    # ---- Run ----
    def run(self, backward: bool = True) -> RunResult:
        """
        Execute the compiled kernels once.

        Args:
            backward: Also run the backward kernels and read back gradients

        Returns:
            RunResult(forward, gradients); arrays are flat float32.
        """
        if not self.kernels:
            raise CompileError("run() called before compile()")
        device = self.device
        command_encoder = device.create_command_encoder()

        for i, kernel in enumerate(self.kernels):
            for earlier in self.kernels[:i]:
                for name, target in kernel.inputs.items():
                    source = earlier.outputs.get(f"{name}_out")
                    if source is not None:
                        command_encoder.copy_buffer_to_buffer(source, 0, target, 0, source.size)
            kernel.run(command_encoder)

        readback = self.buffers[READBACK_BUFFER]
        output = self.kernels[-1].outputs[OUTPUT_BUFFER]
        command_encoder.copy_buffer_to_buffer(output, 0, readback, 0, self.output_size * 4)

        if backward:
            for kernel in self.backward_kernels:
                kernel.run(command_encoder)
            for _, edge, offset in self._edge_slots:
                command_encoder.copy_buffer_to_buffer(
                    self.buffers[edge.buffer], 0, readback, offset * 4, edge.size * 4)

        device.queue.submit([command_encoder.finish()])

        size = readback.size if backward else self.output_size * 4
        data = np.frombuffer(device.queue.read_buffer(readback, 0, size), dtype=np.float32).copy()
        forward = data[:self.output_size]

        gradients = {}
        if backward:
            gradients = self._read_gradients(data)
        return RunResult(forward, gradients)

    def _allocate_readback(self, plan: GraphPlan):
        """Lay out the output, then each parameter edge, in one readback buffer."""
        offset = numel(plan.output_shape)
        for name, edges in plan.leaf_edges().items():
            if name not in self.tensors:
                continue
            for edge in edges:
                self._edge_slots.append((name, edge, offset))
                offset += edge.size
        self.buffers[READBACK_BUFFER] = create_storage_buffer(self.device, offset)

    def _read_gradients(self, data: np.ndarray) -> Dict[str, np.ndarray]:
        gradients = {name: np.zeros(tensor.size, dtype=np.float32)
                     for name, tensor in self.tensors.items()}
        for name, edge, offset in self._edge_slots:
            gradients[name] += fold_gradient(
                data[offset:offset + edge.size], edge.mode, self.tensors[name].size)
        self.gradient_data.update(gradients)
        return gradients

    # ---- Teardown ----
    def _release(self):
        owned = set()
        for kernel in self.kernels + self.backward_kernels:
            owned.update(kernel.outputs)
            kernel.destroy()
        for name, buf in self.buffers.items():
            if name not in owned:
                buf.destroy()
        self.buffers = {}
        self.kernels = []
        self.backward_kernels = []

    def destroy(self):
        """Release every device buffer the graph and its kernels own."""
        self._release()
        self.plan = None

    def print_ast(self) -> str:
        from wgpu_graph.printing import print_ast
        if self.plan is None:
            raise CompileError("print_ast() called before compile()")
        return print_ast(self.plan.output)

    @property
    def contexts(self) -> List[KernelContext]:
        return self.plan.contexts if self.plan is not None else []
