"""
Elementwise operators: arithmetic, activations and dropout.

All of these are Regular: one thread computes one output element, so chains
of them fuse into a single kernel. Binary operands either have the same
shape ([N], [1, N] and [N, 1] count as one), or one is a [1] scalar, a
row vector ([C] / [1, C]) or a column ([R, 1]) broadcast onto an [R, C]
result.
"""

from wgpu_graph.config import DEFAULT_LEAKY_ALPHA
from wgpu_graph.errors import ShapeMismatchError
from wgpu_graph.node import (
    OpClass, broadcast_index, broadcast_mode, f32, memo, numel, read, shape_of, u32,
)


# ============================================================================
# Shape Rules
# ============================================================================

def _squeeze(shape):
    return tuple(s for s in shape if s != 1)


def broadcast_shape(operation: str, a, b):
    """Result shape of an elementwise op over shapes ``a`` and ``b``."""
    a, b = tuple(a), tuple(b)
    if numel(a) == numel(b):
        # [N], [1, N] and [N, 1] share one flat layout; other reorderings do not
        if _squeeze(a) != _squeeze(b):
            raise ShapeMismatchError(operation, a, b)
        return a if len(a) >= len(b) else b
    if numel(b) == 1:
        return a
    if numel(a) == 1:
        return b
    big, small = (a, b) if numel(a) > numel(b) else (b, a)
    try:
        broadcast_mode(small, big)
    except ValueError:
        raise ShapeMismatchError(operation, a, b) from None
    return big


def _operand(node, shape):
    mode = broadcast_mode(node.shape, shape)
    return read(node, broadcast_index(mode, "index", shape)), mode


# ============================================================================
# Binary Arithmetic
# ============================================================================

def _binary(operation, symbol, backward):
    def infer(a, b):
        return broadcast_shape(operation, shape_of(a), shape_of(b))

    def forward(context, a, b):
        shape = infer(a, b)
        context = context.use_context(OpClass.REGULAR, numel(shape))
        [result] = context.use_variables(operation)
        _a = context.gen(a)
        _b = context.gen(b)
        left, left_mode = _operand(_a, shape)
        right, right_mode = _operand(_b, shape)
        code = f"let {result} = {left} {symbol} {right};"
        return context.emit(operation, result, code, OpClass.REGULAR, shape, _a, _b,
                            read_modes=[left_mode, right_mode])

    def build(a, b):
        return memo(forward, backward, a, b, infer=infer, operation=operation)

    build.__name__ = operation
    build.__doc__ = f"Elementwise ``a {symbol} b`` with scalar/row/column broadcasting."
    return build


def _add_backward(node, grad, bw):
    bw.accumulate(node, 0, grad)
    bw.accumulate(node, 1, grad)


def _sub_backward(node, grad, bw):
    bw.accumulate(node, 0, grad)
    bw.accumulate(node, 1, f"-({grad})")


def _mult_backward(node, grad, bw):
    if bw.needs_grad(node, 0):
        bw.accumulate(node, 0, f"{grad} * {bw.value(node, 1)}")
    if bw.needs_grad(node, 1):
        bw.accumulate(node, 1, f"{grad} * {bw.value(node, 0)}")


def _div_backward(node, grad, bw):
    b = bw.value(node, 1)
    if bw.needs_grad(node, 0):
        bw.accumulate(node, 0, f"{grad} / {b}")
    if bw.needs_grad(node, 1):
        a = bw.value(node, 0)
        bw.accumulate(node, 1, f"-({grad}) * {a} / ({b} * {b})")


add = _binary("add", "+", _add_backward)
sub = _binary("sub", "-", _sub_backward)
mult = _binary("mult", "*", _mult_backward)
div = _binary("div", "/", _div_backward)


# ============================================================================
# Unary Functions
# ============================================================================

def _unary(operation, expression, backward, prelude=None):
    """Build a unary op from a WGSL expression template over the operand."""

    def infer(x):
        return shape_of(x)

    def forward(context, x):
        shape = infer(x)
        context = context.use_context(OpClass.REGULAR, numel(shape))
        [result] = context.use_variables(operation)
        _x = context.gen(x)
        code = f"let {result} = {expression(read(_x))};"
        node = context.emit(operation, result, code, OpClass.REGULAR, shape, _x)
        node.prelude = prelude
        return node

    def build(x):
        return memo(forward, backward, x, infer=infer, operation=operation)

    build.__name__ = operation
    return build


def _relu_backward(node, grad, bw):
    x = bw.value(node, 0)
    bw.accumulate(node, 0, f"select(0.0, {grad}, {x} > 0.0)")


def _sigmoid_backward(node, grad, bw):
    s = bw.saved(node)
    bw.accumulate(node, 0, f"{grad} * {s} * (1.0 - {s})")


def _tanh_backward(node, grad, bw):
    t = bw.saved(node)
    bw.accumulate(node, 0, f"{grad} * (1.0 - {t} * {t})")


def _exp_backward(node, grad, bw):
    bw.accumulate(node, 0, f"{grad} * {bw.saved(node)}")


def _log_backward(node, grad, bw):
    bw.accumulate(node, 0, f"{grad} / {bw.value(node, 0)}")


def _sqrt_backward(node, grad, bw):
    bw.accumulate(node, 0, f"{grad} * 0.5 / {bw.saved(node)}")


def _pow2_backward(node, grad, bw):
    bw.accumulate(node, 0, f"{grad} * 2.0 * {bw.value(node, 0)}")


def _pow3_backward(node, grad, bw):
    x = bw.value(node, 0)
    bw.accumulate(node, 0, f"{grad} * 3.0 * {x} * {x}")


def _neg_backward(node, grad, bw):
    bw.accumulate(node, 0, f"-({grad})")


relu = _unary("relu", lambda x: f"max(0.0, {x})", _relu_backward)
relu.__doc__ = "max(0, x)."

sigmoid = _unary("sigmoid", lambda x: f"1.0 / (1.0 + exp(-({x})))", _sigmoid_backward)
sigmoid.__doc__ = "1 / (1 + e^-x)."

tanh = _unary("tanh", lambda x: f"tanh({x})", _tanh_backward)
tanh.__doc__ = "Hyperbolic tangent."

exp = _unary("exp", lambda x: f"exp({x})", _exp_backward)
log = _unary("log", lambda x: f"log({x})", _log_backward)
sqrt = _unary("sqrt", lambda x: f"sqrt({x})", _sqrt_backward)
pow2 = _unary("pow2", lambda x: f"{x} * {x}", _pow2_backward)
pow3 = _unary("pow3", lambda x: f"{x} * {x} * {x}", _pow3_backward)
neg = _unary("neg", lambda x: f"-({x})", _neg_backward)


def leaky_relu(x, alpha: float = DEFAULT_LEAKY_ALPHA):
    """x for x > 0, alpha * x otherwise."""
    slope = f32(alpha)

    def backward(node, grad, bw):
        value = bw.value(node, 0)
        bw.accumulate(node, 0, f"{grad} * select({slope}, 1.0, {value} > 0.0)")

    op = _unary("leaky_relu", lambda v: f"select({slope} * {v}, {v}, {v} > 0.0)", backward)
    return op(x)


# ============================================================================
# Dropout
# ============================================================================

DROPOUT_PRELUDE = """
fn dropout_hash(value: u32) -> f32 {
    var x = value;
    x = (x << 13u) ^ x;
    x = x * (x * x * 15731u + 789221u) + 1376312589u;
    return f32(x & 0x7fffffffu) / 2147483647.0;
}
"""


def dropout(x, rate: float, seed: int = 0):
    """Zero elements with probability ``rate`` and rescale the rest.

    The mask is a hash of the element index and ``seed``, so forward and
    backward agree without storing it. The same mask is drawn on every run.
    """
    if not 0.0 <= rate < 1.0:
        raise ValueError(f"dropout rate must be in [0, 1), got {rate}")
    scale = f32(1.0 / (1.0 - rate))
    threshold = f32(rate)
    offset = u32((int(seed) * 2654435761) & 0xFFFFFFFF)
    keep = f"dropout_hash(index + {offset}) > {threshold}"

    def backward(node, grad, bw):
        bw.use_prelude(DROPOUT_PRELUDE)
        bw.accumulate(node, 0, f"select(0.0, {grad} * {scale}, {keep})")

    op = _unary("dropout", lambda v: f"select(0.0, {v} * {scale}, {keep})", backward,
                prelude=DROPOUT_PRELUDE)
    return op(x)
