"""Trailing-axis reductions and softmax."""

from wgpu_graph.node import OpClass, memo, numel, read, shape_of, u32


def _rows_and_length(shape):
    """(rows, trailing length) of a 1-D or 2-D shape."""
    if len(shape) == 1:
        return 1, shape[0]
    return shape[0], shape[1]


# ============================================================================
# Sum / Mean
# ============================================================================

def _fold_shape(x):
    shape = shape_of(x)
    if len(shape) == 1:
        return (1,)
    return (shape[0], 1)


def _fold(operation, average):
    def forward(context, x):
        shape = _fold_shape(x)
        context = context.use_context(OpClass.REDUCTION, numel(shape))
        [result] = context.use_variables(operation)
        _x = context.gen(x)
        _, length = _rows_and_length(_x.shape)
        lines = [
            f"var {result} = 0.0;",
            f"for (var k = 0u; k < {u32(length)}; k = k + 1u) {{",
            f"    {result} = {result} + {read(_x, f'index * {u32(length)} + k')};",
            "}",
        ]
        if average:
            lines.append(f"{result} = {result} / {float(length)!r};")
        return context.emit(operation, result, "\n".join(lines), OpClass.REDUCTION, shape, _x)

    def backward(node, grad, bw):
        flow = bw.upstream(node)
        if flow is None or not bw.needs_grad(node, 0):
            return
        _, length = _rows_and_length(node.dependencies[0].shape)
        scale = f" / {float(length)!r}" if average else ""
        bw.pull(node, 0, [f"let g = {flow}(index / {u32(length)}){scale};"], "g")

    def build(x):
        return memo(forward, backward, x, infer=_fold_shape, operation=operation)

    build.__name__ = operation
    return build


sum = _fold("sum", average=False)  # noqa: A001
sum.__doc__ = "Sum over the trailing axis: [R, C] -> [R, 1], [N] -> [1]."

mean = _fold("mean", average=True)
mean.__doc__ = "Mean over the trailing axis: [R, C] -> [R, 1], [N] -> [1]."


# ============================================================================
# Softmax
# ============================================================================

def _softmax_forward(context, x):
    shape = shape_of(x)
    context = context.use_context(OpClass.REDUCTION, numel(shape))
    [result] = context.use_variables("softmax")
    _x = context.gen(x)
    _, length = _rows_and_length(shape)
    base = f"{result}_base"
    code = "\n".join([
        f"let {base} = (index / {u32(length)}) * {u32(length)};",
        f"var {result}_max = {read(_x, base)};",
        f"for (var k = 1u; k < {u32(length)}; k = k + 1u) {{",
        f"    {result}_max = max({result}_max, {read(_x, f'{base} + k')});",
        "}",
        f"var {result}_sum = 0.0;",
        f"for (var k = 0u; k < {u32(length)}; k = k + 1u) {{",
        f"    {result}_sum = {result}_sum + exp({read(_x, f'{base} + k')} - {result}_max);",
        "}",
        f"let {result} = exp({read(_x)} - {result}_max) / {result}_sum;",
    ])
    return context.emit("softmax", result, code, OpClass.REDUCTION, shape, _x)


def _softmax_backward(node, grad, bw):
    """dx_i = s_i * (g_i - sum_k g_k s_k) over the row."""
    flow = bw.upstream(node)
    if flow is None or not bw.needs_grad(node, 0):
        return
    _, length = _rows_and_length(node.shape)
    bw.pull(node, 0, [
        f"let base = (index / {u32(length)}) * {u32(length)};",
        "var weighted = 0.0;",
        f"for (var k = 0u; k < {u32(length)}; k = k + 1u) {{",
        f"    weighted = weighted + {flow}(base + k) * {bw.saved(node, 'base + k')};",
        "}",
        f"let g = {bw.saved(node, 'index')} * ({flow}(index) - weighted);",
    ], "g")


def softmax(x):
    """Softmax over the trailing axis, max-subtracted."""
    return memo(_softmax_forward, _softmax_backward, x, infer=shape_of, operation="softmax")
