"""
Loss functions.

binary_cross_entropy and mean_squared_error are elementwise (per-sample
loss, fused with whatever produced the prediction). cross_entropy folds the
class axis and therefore runs in its own dispatch. Probabilities are clamped
to [PROB_EPSILON, 1 - PROB_EPSILON] before any log or division.
"""

from wgpu_graph.config import PROB_EPSILON
from wgpu_graph.elementwise import broadcast_shape
from wgpu_graph.errors import ShapeMismatchError
from wgpu_graph.node import (
    OpClass, broadcast_index, broadcast_mode, f32, memo, numel, read, shape_of, u32,
)

_LOW = f32(PROB_EPSILON)
_HIGH = f32(1.0 - PROB_EPSILON)


def _clamp(expression: str) -> str:
    return f"clamp({expression}, {_LOW}, {_HIGH})"


def _pairwise(operation, expression, backward):
    """Elementwise loss over (predicted, target)."""

    def infer(predicted, actual):
        return broadcast_shape(operation, shape_of(predicted), shape_of(actual))

    def forward(context, predicted, actual):
        shape = infer(predicted, actual)
        context = context.use_context(OpClass.REGULAR, numel(shape))
        [result] = context.use_variables(operation)
        _p = context.gen(predicted)
        _y = context.gen(actual)
        modes = [broadcast_mode(_p.shape, shape), broadcast_mode(_y.shape, shape)]
        p = read(_p, broadcast_index(modes[0], "index", shape))
        y = read(_y, broadcast_index(modes[1], "index", shape))
        code = f"let {result} = {expression(p, y)};"
        return context.emit(operation, result, code, OpClass.REGULAR, shape, _p, _y,
                            read_modes=modes)

    def build(predicted, actual):
        return memo(forward, backward, predicted, actual, infer=infer, operation=operation)

    build.__name__ = operation
    return build


# ============================================================================
# Binary Cross Entropy
# ============================================================================

def _bce_expression(p, y):
    pc = _clamp(p)
    return f"-({y} * log({pc}) + (1.0 - {y}) * log(1.0 - {pc}))"


def _bce_backward(node, grad, bw):
    """dL/dp = (p - y) / (p (1 - p)) with p clamped."""
    pc = _clamp(bw.value(node, 0))
    y = bw.value(node, 1)
    if bw.needs_grad(node, 0):
        bw.accumulate(node, 0, f"{grad} * ({pc} - {y}) / ({pc} * (1.0 - {pc}))")
    if bw.needs_grad(node, 1):
        bw.accumulate(node, 1, f"-({grad}) * log({pc} / (1.0 - {pc}))")


binary_cross_entropy = _pairwise("bce", _bce_expression, _bce_backward)
binary_cross_entropy.__doc__ = "-(y log p + (1 - y) log(1 - p)) per element."


# ============================================================================
# Mean Squared Error
# ============================================================================

def _mse_backward(node, grad, bw):
    """2 (p - t) g for the prediction, the negation for the target."""
    diff = f"({bw.value(node, 0)} - {bw.value(node, 1)})"
    if bw.needs_grad(node, 0):
        bw.accumulate(node, 0, f"2.0 * {diff} * {grad}")
    if bw.needs_grad(node, 1):
        bw.accumulate(node, 1, f"-2.0 * {diff} * {grad}")


mean_squared_error = _pairwise(
    "mse", lambda p, t: f"({p} - {t}) * ({p} - {t})", _mse_backward)
mean_squared_error.__doc__ = "(p - t)^2 per element."


# ============================================================================
# Categorical Cross Entropy
# ============================================================================

def _ce_shape(predicted, actual):
    p, y = shape_of(predicted), shape_of(actual)
    if p != y:
        raise ShapeMismatchError("cross_entropy", p, y, detail="probabilities and labels differ")
    return (1,) if len(p) == 1 else (p[0],)


def _ce_forward(context, predicted, actual):
    shape = _ce_shape(predicted, actual)
    context = context.use_context(OpClass.REDUCTION, numel(shape))
    [result] = context.use_variables("cross_entropy")
    _p = context.gen(predicted)
    _y = context.gen(actual)
    classes = _p.shape[-1]
    at = f"index * {u32(classes)} + k"
    code = "\n".join([
        f"var {result} = 0.0;",
        f"for (var k = 0u; k < {u32(classes)}; k = k + 1u) {{",
        f"    {result} = {result} - {read(_y, at)} * log({_clamp(read(_p, at))});",
        "}",
    ])
    return context.emit("cross_entropy", result, code, OpClass.REDUCTION, shape, _p, _y)


def _ce_backward(node, grad, bw):
    """dL/dp = -g[row] y / p per class."""
    flow = bw.upstream(node)
    if flow is None:
        return
    p, y = node.dependencies
    classes = p.shape[-1]
    row = f"{flow}(index / {u32(classes)})"
    if bw.needs_grad(node, 0):
        bw.pull(node, 0, [
            f"let g = -{row} * {bw.read(y, 'index')} / {_clamp(bw.read(p, 'index'))};",
        ], "g")
    if bw.needs_grad(node, 1):
        bw.pull(node, 1, [
            f"let g = -{row} * log({_clamp(bw.read(p, 'index'))});",
        ], "g")


def cross_entropy(predicted, actual):
    """-sum_c y_c log p_c per row: [R, C] -> [R]."""
    return memo(_ce_forward, _ce_backward, predicted, actual,
                infer=_ce_shape, operation="cross_entropy")
