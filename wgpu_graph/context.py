"""
Per-kernel code accumulator and the kernel boundary rule.

A ``KernelContext`` collects the WGSL statements of one compute dispatch,
its input/output binding registry and the shapes of the values it defines.
Operators call ``use_context`` to land in a context of the right op class
and size, then ``gen`` to resolve operands. An operand produced in another
context is relayed through a hand-off buffer: the producer writes
``cross_<ctx>_<n>_out[index]`` and the consumer reads ``cross_<ctx>_<n>``.
"""

import logging
from typing import Dict, List, Optional

from wgpu_graph.config import WORKGROUP_SIZE
from wgpu_graph.errors import BindingResolutionError
from wgpu_graph.node import Arena, Node, OpClass, buffer_root, read, resolve, u32

logger = logging.getLogger(__name__)


class KernelContext:
    """Accumulates code and bindings for one compute dispatch."""

    def __init__(self, arena: Arena, op_class: OpClass, size: int,
                 parent: Optional["KernelContext"] = None):
        """
        Args:
            arena: Compilation arena issuing ids and caching nodes
            op_class: Regular or Reduction
            size: Number of threads (output elements) of the dispatch
            parent: Context this one was entered from, if any
        """
        self.arena = arena
        self.id = arena.next_context_id()
        self.op_class = op_class
        self.size = size
        self.parent = parent
        self.children: List[KernelContext] = []
        if parent is not None:
            parent.children.append(self)
        arena.contexts.append(self)

        self.code: List[str] = []
        self.inputs: Dict[str, int] = {}
        self.outputs: Dict[str, int] = {}
        self.shapes: Dict[str, tuple] = {}
        self.nodes: List[Node] = []
        self.preludes: List[str] = []
        self.depth = 0
        self.backward = None
        self._crossing_count = 0

    def __repr__(self):
        return f"KernelContext(id={self.id}, class={self.op_class.value}, size={self.size})"

    # ---- Context selection ----
    def use_context(self, op_class: OpClass, size: int) -> "KernelContext":
        """Return the context an op of ``op_class`` producing ``size`` values runs in.

        Regular ops stay in this context when it is Regular of the same size,
        or join a same-sized Regular sibling. Reduction ops always get a
        fresh child: each fold site is its own dispatch.
        """
        if op_class is OpClass.REGULAR:
            if self.op_class is OpClass.REGULAR and self.size == size:
                return self
            if self.parent is not None:
                for sibling in self.parent.children:
                    if (sibling is not self and sibling.op_class is OpClass.REGULAR
                            and sibling.size == size):
                        return sibling
        return KernelContext(self.arena, op_class, size, parent=self)

    # ---- Operand resolution ----
    def gen(self, arg) -> Node:
        """Force ``arg`` and return a node readable from this context."""
        node = resolve(arg)(self)
        if node.constant:
            return node
        if node.buffer:
            self.add_input(node.buffer_name)
            return node
        if node.context is self:
            return node
        return self.cross(node)

    def cross(self, node: Node) -> Node:
        """Relay ``node`` out of its context through a hand-off buffer."""
        placeholder = self.arena.crossings.get(node)
        if placeholder is None:
            placeholder = node.context.handoff(node)
        self.add_input(placeholder.buffer_name)
        return placeholder

    def handoff(self, node: Node) -> Node:
        """Create the hand-off placeholder for a node this context produces."""
        name = f"cross_{self.id}_{self._crossing_count}"
        self._crossing_count += 1
        placeholder = Node(
            name, "", node.op_class, node.shape, self, [node],
            operation="cross", buffer_name=name, requires_grad=node.requires_grad,
        )
        placeholder.producer = node
        placeholder.relay = f"{name}_out[index] = {read(node)};"
        self.add_output(f"{name}_out")
        self.arena.crossings[node] = placeholder
        self.arena.placeholders[name] = placeholder
        logger.debug("Context %d hands %s off as %s", self.id, node.variable, name)
        return placeholder

    # ---- Emission ----
    def use_variables(self, *prefixes: str) -> List[str]:
        """Allocate fresh variable names, one per prefix."""
        return [self.arena.next_variable(p) for p in prefixes]

    def emit(self, operation: str, variable: str, code: str, op_class: OpClass,
             shape, *dependencies: Node, read_modes=None, requires_grad=None) -> Node:
        """Create a node owned by this context and record its shape."""
        node = Node(variable, code, op_class, shape, self, dependencies,
                    operation=operation, read_modes=read_modes,
                    requires_grad=requires_grad)
        self.shapes[variable] = node.shape
        return node

    def split(self) -> "KernelContext":
        """A sibling dispatch of the same class and size under this context."""
        return KernelContext(self.arena, self.op_class, self.size, parent=self)

    # ---- Binding registry ----
    def add_input(self, name: str) -> int:
        if name not in self.inputs:
            self.inputs[name] = len(self.inputs)
        return self.inputs[name]

    def add_output(self, name: str) -> int:
        if name not in self.outputs:
            self.outputs[name] = len(self.outputs)
        return self.outputs[name]

    def binding_index(self, name: str) -> int:
        """Slot of ``name``: inputs first, then outputs."""
        if name in self.inputs:
            return self.inputs[name]
        if name in self.outputs:
            return len(self.inputs) + self.outputs[name]
        raise BindingResolutionError(name, f"context {self.id}")

    def reset(self):
        """Forget code and bindings before the compiler rebuilds them."""
        self.code = []
        self.inputs = {}
        self.outputs = {}
        self.nodes = []
        self.preludes = []

    def append(self, node: Node):
        """Append a node's statement and register the buffers it reads."""
        for dep in node.dependencies:
            if dep.buffer:
                self.add_input(dep.buffer_name)
        if node.prelude and node.prelude not in self.preludes:
            self.preludes.append(node.prelude)
        self.nodes.append(node)
        self.shapes[node.variable] = node.shape
        if node.code:
            self.code.append(node.code.strip())

    def reload(self, node: Node, placeholder: Node):
        """Rebind an inline value computed by an earlier dispatch of this context."""
        self.add_input(placeholder.buffer_name)
        self.code.insert(0, f"let {node.variable} = {placeholder.buffer_name}[index];")

    def save(self, node: Node) -> str:
        """Have the forward kernel store ``node`` for the backward kernel."""
        source = buffer_root(node)
        source.saved = True
        return source.intermediate

    # ---- Source generation ----
    def generate_kernel(self) -> str:
        """Complete WGSL source for this context's forward dispatch."""
        body = list(self.code)
        for node in self.nodes:
            if node.saved:
                self.add_output(node.intermediate)
                body.append(f"{node.intermediate}[index] = {node.variable};")
        return render_kernel(self.inputs, self.outputs, self.preludes, [], [
            "let index = global_id.x;",
            f"if (index >= {u32(self.size)}) {{",
            "    return;",
            "}",
        ] + body)


def render_kernel(inputs, outputs, preludes, functions, body) -> str:
    """Assemble bindings, helper functions and the entry point."""
    lines = []
    slot = 0
    for name in inputs:
        lines.append(f"@group(0) @binding({slot}) var<storage, read> {name}: array<f32>;")
        slot += 1
    for name in outputs:
        lines.append(f"@group(0) @binding({slot}) var<storage, read_write> {name}: array<f32>;")
        slot += 1
    lines.append("")
    for text in list(preludes) + list(functions):
        lines.append(text.strip())
        lines.append("")
    lines.append(f"@compute @workgroup_size({WORKGROUP_SIZE})")
    lines.append("fn main(@builtin(global_invocation_id) global_id: vec3<u32>) {")
    for statement in body:
        for line in statement.splitlines():
            lines.append(f"    {line}" if line.strip() else "")
    lines.append("}")
    return "\n".join(lines) + "\n"
