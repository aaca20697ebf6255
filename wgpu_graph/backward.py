"""
Source-to-source reverse-mode differentiation.

Every forward kernel gets one backward kernel, generated in reverse forward
order. Inside a kernel, each inline node that needs a gradient owns a local
accumulator ``grad_<var>``; backward rules run in reverse topological order
and add their contributions to their operands' accumulators.

Gradients leave a kernel through edge buffers. When a rule contributes to a
buffer-backed operand (a tensor, an input, or a value handed off from
another kernel), the contribution is written per thread to
``grad_<buffer>_c<ctx>_<k>`` together with how the operand was indexed
(identity, scalar, row or column broadcast). The producer of a hand-off
value later sums all edges aimed at it in a ``grad_flow_<buffer>(j)``
helper, which folds broadcasts back onto element ``j``. Tensor gradients
are folded the same way on the host.

Reduction ops need the upstream gradient at indices other than their own,
so their rules are written in pull form: a separate guarded block with one
thread per operand element that calls the ``grad_flow`` helper directly.
"""

import logging
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np

from wgpu_graph.context import KernelContext, render_kernel
from wgpu_graph.errors import CompileError
from wgpu_graph.node import IDENTITY, ROW, Node, broadcast_index, buffer_root, u32

logger = logging.getLogger(__name__)


class Edge(NamedTuple):
    """One gradient contribution buffer aimed at a buffer-backed value."""

    buffer: str
    mode: str
    size: int  # elements written, one per producing thread


# ============================================================================
# Gradient Folding
# ============================================================================

def fold_gradient(data: np.ndarray, mode: str, size: int) -> np.ndarray:
    """Fold per-thread contributions of an edge onto ``size`` elements.

    Args:
        data: Flat contributions read back from an edge buffer
        mode: How the target was indexed when it was read in forward
        size: Element count of the target

    Returns:
        Flat float32 array of length ``size``.
    """
    data = np.asarray(data, dtype=np.float32).reshape(-1)
    if mode == ROW:
        return data.reshape(-1, size).sum(axis=0)
    return data.reshape(size, -1).sum(axis=1)


def _fold_lines(edge: Edge, size: int) -> List[str]:
    if edge.mode == ROW:
        return [
            f"for (var b = 0u; b < {u32(edge.size // size)}; b = b + 1u) {{",
            f"    total = total + {edge.buffer}[b * {u32(size)} + j];",
            "}",
        ]
    inner = edge.size // size
    if inner == 1:
        return [f"total = total + {edge.buffer}[j];"]
    return [
        f"for (var k = 0u; k < {u32(inner)}; k = k + 1u) {{",
        f"    total = total + {edge.buffer}[j * {u32(inner)} + k];",
        "}",
    ]


# ============================================================================
# Backward Context
# ============================================================================

class BackwardContext:
    """
    Code and bindings of one backward kernel.

    Backward rules receive this object and talk to it through ``value``,
    ``saved``, ``read``, ``accumulate``, ``upstream``, ``pull`` and ``emit``.
    """

    def __init__(self, context: KernelContext, edges: Dict[Node, List[Edge]]):
        self.context = context
        self.size = context.size
        self.inputs: Dict[str, int] = {}
        self.outputs: Dict[str, int] = {}
        self.output_sizes: Dict[str, int] = {}
        self.preludes: List[str] = []
        self.functions: List[str] = []
        self.declarations: List[str] = []
        self.main: List[str] = []
        self.writes: List[str] = []
        self.blocks: List[Tuple[int, List[str]]] = []
        self.produced: List[Tuple[Node, Edge]] = []

        self._edges = edges
        self._grads: Dict[Node, str] = {}
        self._active = set()
        self._accumulators: Dict[Tuple[Node, str], str] = {}
        self._flows: Dict[Node, Optional[str]] = {}
        self._edge_count = 0

    def __repr__(self):
        return (f"BackwardContext(context={self.context.id}, inputs={list(self.inputs)}, "
                f"outputs={list(self.outputs)})")

    # ---- Bindings ----
    def _input(self, name: str):
        if name not in self.inputs:
            self.inputs[name] = len(self.inputs)

    def _output(self, name: str, size: int):
        self.outputs[name] = len(self.outputs)
        self.output_sizes[name] = size

    def _edge(self, target: Node, mode: str, size: int) -> str:
        buffer = f"grad_{target.buffer_name}_c{self.context.id}_{self._edge_count}"
        self._edge_count += 1
        edge = Edge(buffer, mode, size)
        self._output(buffer, size)
        self._edges.setdefault(target, []).append(edge)
        self.produced.append((target, edge))
        return buffer

    @property
    def threads(self) -> int:
        sizes = [size for size, _ in self.blocks]
        if self.writes or self.main:
            sizes.append(self.size)
        return max(sizes, default=0)

    # ---- Gradient routing ----
    def _route(self, dep: Node) -> Optional[Node]:
        """Where gradient for ``dep`` goes: a local node or a buffer target."""
        if dep.constant or not dep.requires_grad:
            return None
        if dep.inline:
            if dep.context is self.context:
                return dep
            placeholder = self.context.arena.crossings.get(dep)
            if placeholder is None:
                raise CompileError(f"{dep.variable} is read across kernels without a hand-off")
            return placeholder
        root = buffer_root(dep)
        return root if root.requires_grad else None

    def needs_grad(self, node: Node, i: int) -> bool:
        """Whether operand ``i`` of ``node`` receives a gradient."""
        return self._route(node.dependencies[i]) is not None

    def declare(self, node: Node, initial: str = "0.0") -> str:
        name = f"grad_{node.variable}"
        taken = set(self._grads.values())
        suffix = 1
        while name in taken:
            name = f"grad_{node.variable}_{suffix}"
            suffix += 1
        self._grads[node] = name
        node.gradient_variable = name
        self.declarations.append(f"var {name} = {initial};")
        return name

    def accumulate(self, node: Node, i: int, expression: str):
        """Add ``expression`` to the gradient of operand ``i`` at this index."""
        dep = node.dependencies[i]
        target = self._route(dep)
        if target is None:
            return
        if target.inline:
            grad = self._grads[target]
            self.main.append(f"{grad} = {grad} + {expression};")
            self._active.add(target)
            return
        mode = node.read_modes[i] if dep.buffer else IDENTITY
        key = (target, mode)
        local = self._accumulators.get(key)
        if local is None:
            local = f"gacc_{len(self._accumulators)}"
            self._accumulators[key] = local
            self.declarations.append(f"var {local} = 0.0;")
            buffer = self._edge(target, mode, self.size)
            self.writes.append(f"{buffer}[index] = {local};")
        self.main.append(f"{local} = {local} + {expression};")

    def pull(self, node: Node, i: int, lines: List[str], expression: str):
        """Compute operand ``i``'s gradient with one thread per operand element."""
        target = self._route(node.dependencies[i])
        if target is None:
            return
        if target.inline:
            raise CompileError(f"pull-form gradient of {node.operation} needs a buffer operand")
        buffer = self._edge(target, IDENTITY, target.size)
        self.blocks.append((target.size, list(lines) + [f"{buffer}[index] = {expression};"]))

    def emit(self, *lines: str):
        """Append statements to the per-element block."""
        self.main.extend(lines)

    def use_prelude(self, text: str):
        if text not in self.preludes:
            self.preludes.append(text)

    # ---- Forward values ----
    def read(self, dep: Node, index: str = "index") -> str:
        """Forward value of ``dep`` at ``index``."""
        if dep.constant:
            return dep.variable
        if dep.buffer:
            self._input(dep.buffer_name)
            return f"{dep.buffer_name}[{index}]"
        if dep.context is self.context:
            return self.saved(dep, index)
        placeholder = self.context.arena.crossings.get(dep)
        if placeholder is None:
            raise CompileError(f"{dep.variable} is read across kernels without a hand-off")
        self._input(placeholder.buffer_name)
        return f"{placeholder.buffer_name}[{index}]"

    def value(self, node: Node, i: int) -> str:
        """Forward value of operand ``i`` as ``node`` read it at this index."""
        index = broadcast_index(node.read_modes[i], "index", node.shape)
        return self.read(node.dependencies[i], index)

    def saved(self, node: Node, index: str = "index") -> str:
        """Forward value of an inline node, stored by the forward kernel."""
        if not node.inline or node.context is not self.context:
            return self.read(node, index)
        intermediate = self.context.save(node)
        self._input(intermediate)
        return f"{intermediate}[{index}]"

    def upstream(self, node: Node) -> Optional[str]:
        """Name of the ``fn(j) -> f32`` returning the total gradient of ``node`` at j."""
        return self._flows.get(node)

    def flow(self, node: Node) -> Optional[str]:
        placeholder = self.context.arena.crossings.get(node)
        edges = self._edges.get(placeholder) if placeholder is not None else None
        if not edges:
            self._flows[node] = None
            return None
        name = f"grad_flow_{placeholder.buffer_name}"
        lines = [f"fn {name}(j: u32) -> f32 {{", "    var total = 0.0;"]
        for edge in edges:
            self._input(edge.buffer)
            lines.extend(f"    {line}" for line in _fold_lines(edge, placeholder.size))
        lines.extend(["    return total;", "}"])
        self.functions.append("\n".join(lines))
        self._flows[node] = name
        return name

    # ---- Source generation ----
    def generate_kernel(self) -> str:
        body = ["let index = global_id.x;"]
        per_element = self.declarations + self.main + self.writes
        if self.writes or self.main:
            body.append(f"if (index < {u32(self.size)}) {{")
            body.extend(_indent(per_element))
            body.append("}")
        for size, lines in self.blocks:
            body.append(f"if (index < {u32(size)}) {{")
            body.extend(_indent(lines))
            body.append("}")
        return render_kernel(self.inputs, self.outputs, self.preludes, self.functions, body)


def _indent(lines: List[str]) -> List[str]:
    result = []
    for statement in lines:
        for line in statement.strip("\n").splitlines():
            result.append(f"    {line}")
    return result


# ============================================================================
# Backward Pass
# ============================================================================

def _backward_kernel(context: KernelContext, root: Node, seed: str,
                     edges: Dict[Node, List[Edge]]) -> BackwardContext:
    bw = BackwardContext(context, edges)
    nodes = [n for n in context.nodes if n.requires_grad]
    for node in nodes:
        bw.declare(node, seed if node is root else "0.0")
    if root in nodes:
        bw._active.add(root)

    for node in nodes:
        flow = bw.flow(node)
        if flow is not None:
            grad = bw._grads[node]
            bw.main.append(f"{grad} = {grad} + {flow}(index);")
            bw._active.add(node)

    for node in reversed(nodes):
        if node in bw._active and node.backward_rule is not None:
            node.backward_rule(node, bw._grads[node], bw)
    return bw


def backpass(root: Node, contexts: List[KernelContext], seed: str = "1.0") -> List[BackwardContext]:
    """
    Generate the backward kernels for a linearized forward graph.

    Args:
        root: Node whose gradient is seeded with ``seed`` (the graph output)
        contexts: Forward contexts in execution order
        seed: WGSL expression for the output gradient

    Returns:
        One BackwardContext per forward context, in backward execution
        order (reverse of ``contexts``). Each is also stored on
        ``context.backward``.
    """
    edges: Dict[Node, List[Edge]] = {}
    result = []
    for context in reversed(contexts):
        bw = _backward_kernel(context, root, seed, edges)
        context.backward = bw
        result.append(bw)
        logger.debug("Backward kernel for context %d: %d inputs, %d outputs, %d threads",
                     context.id, len(bw.inputs), len(bw.outputs), bw.threads)
    return result
