"""
Matrix products and transpose.

These are Reduction ops: a thread reads operands at arbitrary indices, so
each call site gets its own dispatch and its operands always arrive as
buffers. Gradients are written in pull form: one backward thread per
operand element, reading the upstream gradient through the result's
``grad_flow`` helper.
"""

from wgpu_graph.errors import ShapeMismatchError
from wgpu_graph.node import OpClass, memo, numel, read, shape_of, u32


# ============================================================================
# Matmul
# ============================================================================

def _matmul_shape(a, b):
    a, b = shape_of(a), shape_of(b)
    if len(a) != 2 or len(b) != 2:
        raise ShapeMismatchError("matmul", a, b, detail="both operands must be 2-D")
    if a[1] != b[0]:
        raise ShapeMismatchError("matmul", a, b, detail=f"inner dimensions {a[1]} != {b[0]}")
    return (a[0], b[1])


def _matmul_forward(context, a, b):
    shape = _matmul_shape(a, b)
    context = context.use_context(OpClass.REDUCTION, numel(shape))
    [result] = context.use_variables("matmul")
    _a = context.gen(a)
    _b = context.gen(b)
    inner, cols = _a.shape[1], shape[1]
    code = "\n".join([
        f"let {result}_row = index / {u32(cols)};",
        f"let {result}_col = index % {u32(cols)};",
        f"var {result} = 0.0;",
        f"for (var k = 0u; k < {u32(inner)}; k = k + 1u) {{",
        f"    {result} = {result} + {read(_a, f'{result}_row * {u32(inner)} + k')}"
        f" * {read(_b, f'k * {u32(cols)} + {result}_col')};",
        "}",
    ])
    return context.emit("matmul", result, code, OpClass.REDUCTION, shape, _a, _b)


def _matmul_backward(node, grad, bw):
    """dA = G . B^T and dB = A^T . G."""
    flow = bw.upstream(node)
    if flow is None:
        return
    a, b = node.dependencies
    rows, inner = a.shape
    cols = b.shape[1]
    if bw.needs_grad(node, 0):
        bw.pull(node, 0, [
            f"let i = index / {u32(inner)};",
            f"let k = index % {u32(inner)};",
            "var acc = 0.0;",
            f"for (var n = 0u; n < {u32(cols)}; n = n + 1u) {{",
            f"    acc = acc + {flow}(i * {u32(cols)} + n) * {bw.read(b, f'k * {u32(cols)} + n')};",
            "}",
        ], "acc")
    if bw.needs_grad(node, 1):
        bw.pull(node, 1, [
            f"let k = index / {u32(cols)};",
            f"let n = index % {u32(cols)};",
            "var acc = 0.0;",
            f"for (var i = 0u; i < {u32(rows)}; i = i + 1u) {{",
            f"    acc = acc + {bw.read(a, f'i * {u32(inner)} + k')} * {flow}(i * {u32(cols)} + n);",
            "}",
        ], "acc")


def matmul(a, b):
    """[M, K] x [K, N] -> [M, N]."""
    return memo(_matmul_forward, _matmul_backward, a, b,
                infer=_matmul_shape, operation="matmul")


# ============================================================================
# Dot
# ============================================================================

def _dot_shape(a, b):
    a, b = shape_of(a), shape_of(b)
    if len(b) != 1 and not (len(b) == 2 and b[1] == 1):
        raise ShapeMismatchError("dot", a, b, detail="second operand must be a vector")
    k = b[0]
    if len(a) == 1 and a[0] == k:
        return (1,)
    if len(a) == 2 and a[1] == k:
        return (a[0],)
    raise ShapeMismatchError("dot", a, b)


def _dot_forward(context, a, b):
    shape = _dot_shape(a, b)
    context = context.use_context(OpClass.REDUCTION, numel(shape))
    [result] = context.use_variables("dot")
    _a = context.gen(a)
    _b = context.gen(b)
    k = _b.shape[0]
    code = "\n".join([
        f"var {result} = 0.0;",
        f"for (var k = 0u; k < {u32(k)}; k = k + 1u) {{",
        f"    {result} = {result} + {read(_a, f'index * {u32(k)} + k')} * {read(_b, 'k')};",
        "}",
    ])
    return context.emit("dot", result, code, OpClass.REDUCTION, shape, _a, _b)


def _dot_backward(node, grad, bw):
    flow = bw.upstream(node)
    if flow is None:
        return
    a, b = node.dependencies
    k = b.shape[0]
    rows = node.size
    if bw.needs_grad(node, 0):
        bw.pull(node, 0, [
            f"let g = {flow}(index / {u32(k)}) * {bw.read(b, f'index % {u32(k)}')};",
        ], "g")
    if bw.needs_grad(node, 1):
        bw.pull(node, 1, [
            "var acc = 0.0;",
            f"for (var r = 0u; r < {u32(rows)}; r = r + 1u) {{",
            f"    acc = acc + {flow}(r) * {bw.read(a, f'r * {u32(k)} + index')};",
            "}",
        ], "acc")


def dot(a, b):
    """Vector . vector -> [1], or matrix [R, K] . vector [K] -> [R]."""
    return memo(_dot_forward, _dot_backward, a, b, infer=_dot_shape, operation="dot")


# ============================================================================
# Transpose
# ============================================================================

def _transpose_shape(x):
    shape = shape_of(x)
    if len(shape) == 1:
        return (shape[0], 1)
    return (shape[1], shape[0])


def _transpose_forward(context, x):
    shape = _transpose_shape(x)
    context = context.use_context(OpClass.REDUCTION, numel(shape))
    [result] = context.use_variables("transpose")
    _x = context.gen(x)
    rows = shape[1]  # rows of the source
    code = (f"let {result} = "
            f"{read(_x, f'(index % {u32(rows)}) * {u32(shape[0])} + index / {u32(rows)}')};")
    return context.emit("transpose", result, code, OpClass.REDUCTION, shape, _x)


def _transpose_backward(node, grad, bw):
    flow = bw.upstream(node)
    if flow is None or not bw.needs_grad(node, 0):
        return
    cols, rows = node.shape  # source is [rows, cols]
    bw.pull(node, 0, [
        f"let g = {flow}((index % {u32(cols)}) * {u32(rows)} + index / {u32(cols)});",
    ], "g")


def transpose(x):
    """Swap the two axes of a matrix; a vector becomes a column."""
    return memo(_transpose_forward, _transpose_backward, x,
                infer=_transpose_shape, operation="transpose")
