"""
Symbolic operation nodes and the memoizing builder combinator.

A ``Builder`` describes one operator application (forward codegen, backward
rule, operand arguments). Calling it with a ``KernelContext`` produces a
``Node``: a fragment of WGSL computing the value at the current ``index``.
Nodes are cached in the compilation ``Arena`` keyed by builder identity, so a
subexpression used twice is generated once and referenced twice.

Core pieces:
  - OpClass: Regular / Reduction partition label
  - Node: variable, code, dependencies, shape, owning context, consumers
  - Builder / memo: operator application with per-compile memoization
  - Arena: node cache plus the variable and context id generators
  - resolve: closed dispatch from float | int | leaf | Builder to a Builder
"""

import enum
import numbers
import itertools
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Shape = Tuple[int, ...]


# ============================================================================
# Op Classes & Shape Helpers
# ============================================================================

class OpClass(enum.Enum):
    """Kernel partition label."""

    REGULAR = "regular"  # one thread per output element
    REDUCTION = "reduction"  # one thread folds over an axis


IDENTITY = "identity"
SCALAR = "scalar"
ROW = "row"
COL = "col"


def numel(shape: Sequence[int]) -> int:
    """Total number of elements."""
    result = 1
    for s in shape:
        result *= s
    return result


def as_shape(shape) -> Shape:
    if isinstance(shape, int):
        shape = (shape,)
    shape = tuple(int(s) for s in shape)
    if not shape or len(shape) > 2 or any(s <= 0 for s in shape):
        raise ValueError(f"Shapes must be 1-D or 2-D with positive sizes, got {list(shape)}")
    return shape


def u32(value: int) -> str:
    return f"{int(value)}u"


def f32(value: float) -> str:
    """Format a float as a WGSL f32 literal."""
    text = repr(float(value))
    if text in ("inf", "-inf", "nan"):
        raise ValueError(f"Cannot emit non-finite constant {value}")
    return f"({text})" if text.startswith("-") else text


def broadcast_mode(shape: Shape, out_shape: Shape) -> str:
    """How an operand of ``shape`` is indexed inside an ``out_shape`` kernel."""
    if numel(shape) == numel(out_shape):
        return IDENTITY
    if numel(shape) == 1:
        return SCALAR
    if len(out_shape) == 2:
        rows, cols = out_shape
        if shape in ((cols,), (1, cols)):
            return ROW
        if shape == (rows, 1):
            return COL
    raise ValueError(f"Shape {list(shape)} does not broadcast onto {list(out_shape)}")


def broadcast_index(mode: str, index: str, out_shape: Shape) -> str:
    """Index expression reading an operand broadcast with ``mode``."""
    if mode == IDENTITY:
        return index
    if mode == SCALAR:
        return "0u"
    cols = out_shape[-1]
    if mode == ROW:
        return f"({index}) % {u32(cols)}"
    if mode == COL:
        return f"({index}) / {u32(cols)}"
    raise ValueError(f"Unknown broadcast mode {mode}")


# ============================================================================
# Node
# ============================================================================

class Node:
    """
    One scalar-per-index computation in the symbolic DAG.

    Inline nodes live in a kernel as a WGSL local named ``variable``.
    Buffer-backed nodes (tensors, inputs, hand-off placeholders and views of
    them) are read as ``buffer_name[i]`` and can be indexed freely.
    Constants are read as a literal at every index.
    """

    def __init__(
        self,
        variable: str,
        code: str,
        op_class: OpClass,
        shape: Shape,
        context,
        dependencies: Sequence["Node"] = (),
        operation: str = "",
        read_modes: Optional[Sequence[str]] = None,
        buffer_name: Optional[str] = None,
        constant: bool = False,
        requires_grad: Optional[bool] = None,
    ):
        self.variable = variable
        self.code = code
        self.op_class = op_class
        self.shape = tuple(shape)
        self.context = context
        self.dependencies: List[Node] = list(dependencies)
        self.operation = operation or variable
        self.read_modes = list(read_modes) if read_modes is not None else [
            IDENTITY for _ in self.dependencies
        ]
        self.buffer_name = buffer_name
        self.constant = constant
        if requires_grad is None:
            requires_grad = any(d.requires_grad for d in self.dependencies)
        self.requires_grad = requires_grad

        self.gradient_variable: Optional[str] = None
        self.backward_rule: Optional[Callable] = None
        self.consumers: List[Node] = []
        self.leaf = None  # Tensor/Input for leaf nodes
        self.view_of: Optional[Node] = None  # reshape source
        self.producer: Optional[Node] = None  # hand-off placeholder source
        self.relay: Optional[str] = None  # producer-side copy statement
        self.prelude: Optional[str] = None  # WGSL helpers the code calls
        self.saved = False  # forward writes <variable>_intermediate
        self.builder = None

        for dep in self.dependencies:
            dep.consumers.append(self)

    # ---- Properties ----
    @property
    def size(self) -> int:
        return numel(self.shape)

    @property
    def buffer(self) -> bool:
        """True when the value lives in a storage buffer."""
        return self.buffer_name is not None

    @property
    def inline(self) -> bool:
        return not self.buffer and not self.constant

    @property
    def parent(self) -> Optional["Node"]:
        """First recorded consumer."""
        return self.consumers[0] if self.consumers else None

    @property
    def intermediate(self) -> str:
        return f"{self.variable}_intermediate"

    def __repr__(self):
        return (f"Node({self.operation}, var={self.variable}, shape={list(self.shape)}, "
                f"class={self.op_class.value})")


def read(node: Node, index: str = "index") -> str:
    """WGSL expression for ``node`` at ``index`` in forward code."""
    if node.constant:
        return node.variable
    if node.buffer:
        return f"{node.buffer_name}[{index}]"
    if index != "index":
        raise ValueError(f"Inline value {node.variable} can only be read at its own index")
    return node.variable


def buffer_root(node: Node) -> Node:
    """Follow reshape views back to the node that actually holds the data."""
    while node.view_of is not None:
        node = node.view_of
    return node


# ============================================================================
# Arena
# ============================================================================

class Arena:
    """
    Per-compile node cache and name generators.

    Names depend only on construction order, so compiling the same graph
    twice yields the same variables, contexts and bindings.
    """

    def __init__(self):
        self.nodes: Dict["Builder", Node] = {}
        self.contexts: List = []
        self.crossings: Dict[Node, Node] = {}
        self.placeholders: Dict[str, Node] = {}
        self.leaves: Dict[str, Node] = {}
        self._variables = itertools.count()
        self._contexts = itertools.count()

    def next_variable(self, prefix: str) -> str:
        return f"{prefix}_{next(self._variables)}"

    def next_context_id(self) -> int:
        return next(self._contexts)


# ============================================================================
# Builders
# ============================================================================

class Composable:
    """Operator overloads shared by builders and leaf tensors."""

    def __add__(self, other):
        from wgpu_graph.elementwise import add
        return add(self, other)

    def __radd__(self, other):
        from wgpu_graph.elementwise import add
        return add(other, self)

    def __sub__(self, other):
        from wgpu_graph.elementwise import sub
        return sub(self, other)

    def __rsub__(self, other):
        from wgpu_graph.elementwise import sub
        return sub(other, self)

    def __mul__(self, other):
        from wgpu_graph.elementwise import mult
        return mult(self, other)

    def __rmul__(self, other):
        from wgpu_graph.elementwise import mult
        return mult(other, self)

    def __truediv__(self, other):
        from wgpu_graph.elementwise import div
        return div(self, other)

    def __rtruediv__(self, other):
        from wgpu_graph.elementwise import div
        return div(other, self)

    def __matmul__(self, other):
        from wgpu_graph.linalg import matmul
        return matmul(self, other)

    def __neg__(self):
        from wgpu_graph.elementwise import neg
        return neg(self)


class Builder(Composable):
    """
    A memoized operator application.

    ``forward(context, *args)`` emits the node; ``backward(node, grad, bw)``
    emits its gradient code; ``infer(*args)`` computes the output shape
    without generating code. Shape inference is lazy, so incompatible shapes
    surface during codegen rather than at construction.
    """

    def __init__(self, forward, backward, args, infer=None, operation=""):
        self.forward = forward
        self.backward = backward
        self.args = args
        self.infer = infer
        self.operation = operation
        self._shape: Optional[Shape] = None

    @property
    def shape(self) -> Shape:
        if self._shape is None:
            if self.infer is None:
                raise TypeError(f"{self.operation} has no shape inference")
            self._shape = tuple(self.infer(*self.args))
        return self._shape

    def __call__(self, context) -> Node:
        arena = context.arena
        node = arena.nodes.get(self)
        if node is None:
            # Nothing is cached if forward raises
            node = self.forward(context, *self.args)
            if node.backward_rule is None:
                node.backward_rule = self.backward
            node.builder = self
            arena.nodes[self] = node
        return node

    def __repr__(self):
        return f"Builder({self.operation})"


def memo(forward, backward, *args, infer=None, operation="") -> Builder:
    """Wrap an operator's forward/backward pair into a memoized builder."""
    return Builder(forward, backward, args, infer=infer, operation=operation)


# ============================================================================
# Constants & Argument Resolution
# ============================================================================

def _constant_forward(context, value):
    return Node(f32(value), "", OpClass.REGULAR, (1,), context,
                operation="constant", constant=True, requires_grad=False)


def constant(value: float) -> Builder:
    """A shape-[1] literal broadcast to every index."""
    return memo(_constant_forward, None, float(value),
                infer=lambda value: (1,), operation="constant")


def resolve(arg) -> Builder:
    """Map an operand (number, leaf tensor or builder) to its builder."""
    if isinstance(arg, Builder):
        return arg
    if isinstance(arg, bool):
        raise TypeError("Boolean operands are not supported")
    if isinstance(arg, numbers.Real):
        return constant(arg)
    builder = getattr(arg, "builder", None)
    if isinstance(builder, Builder):
        return builder
    raise TypeError(f"Cannot use {type(arg).__name__} as a graph operand")


def shape_of(arg) -> Shape:
    return resolve(arg).shape
