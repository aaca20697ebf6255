"""
Batch and layer normalization.

Both normalize x over a group of elements, then scale by gamma and shift by
beta (per feature). Mean, variance and the normalized value are separate
nodes in the fused kernel. The backward pass reads the cached mean, then
recomputes the variance from x. dx uses the closed form

    dx_i = inv / n * (n * dxhat_i - sum_k dxhat_k - xhat_i * sum_k dxhat_k xhat_k)

with dxhat = g * gamma; dgamma and dbeta accumulate per thread and are
folded over the batch by the reader.
"""

from wgpu_graph.config import NORM_EPSILON
from wgpu_graph.errors import ShapeMismatchError
from wgpu_graph.node import (
    OpClass, broadcast_index, broadcast_mode, f32, memo, numel, read, shape_of, u32,
)


class _Layout:
    """Where the elements normalized together with ``index`` sit.

    Element k of the group of thread t is ``base(t) + k * stride``.
    """

    def __init__(self, axis: str, shape):
        rows, features = (1, shape[0]) if len(shape) == 1 else shape
        self.features = features
        if axis == "feature":
            self.count, self.stride = features, 1
        else:
            self.count, self.stride = rows, features
        self.axis = axis

    def base(self, index: str) -> str:
        if self.axis == "feature":
            return f"(({index}) / {u32(self.features)}) * {u32(self.features)}"
        return f"({index}) % {u32(self.features)}"

    def element(self, base: str, k: str) -> str:
        if self.stride == 1:
            return f"{base} + {k}"
        return f"{base} + {k} * {u32(self.stride)}"


def _norm(operation, axis):
    def infer(x, gamma, beta):
        shape = shape_of(x)
        if axis == "batch" and len(shape) != 2:
            raise ShapeMismatchError(operation, shape, detail="input must be [batch, features]")
        features = shape[-1]
        for param in (gamma, beta):
            if shape_of(param) not in ((features,), (1, features)):
                raise ShapeMismatchError(
                    operation, shape, shape_of(param),
                    detail=f"scale/shift must be [{features}] or [1, {features}]",
                )
        return shape

    def forward(context, x, gamma, beta):
        shape = infer(x, gamma, beta)
        context = context.use_context(OpClass.REDUCTION, numel(shape))
        mean_var, var_var, norm_var, result = context.use_variables(
            f"{operation}_mean", f"{operation}_variance", f"{operation}_normalized", operation)
        _x = context.gen(x)
        _gamma = context.gen(gamma)
        _beta = context.gen(beta)
        layout = _Layout(axis, shape)
        count = u32(layout.count)
        base = f"{mean_var}_base"

        mean = context.emit(f"{operation}_mean", mean_var, "\n".join([
            f"let {base} = {layout.base('index')};",
            f"var {mean_var} = 0.0;",
            f"for (var k = 0u; k < {count}; k = k + 1u) {{",
            f"    {mean_var} = {mean_var} + {read(_x, layout.element(base, 'k'))};",
            "}",
            f"{mean_var} = {mean_var} / {float(layout.count)!r};",
        ]), OpClass.REDUCTION, shape, _x, requires_grad=False)

        variance = context.emit(f"{operation}_variance", var_var, "\n".join([
            f"var {var_var} = 0.0;",
            f"for (var k = 0u; k < {count}; k = k + 1u) {{",
            f"    let d = {read(_x, layout.element(base, 'k'))} - {mean_var};",
            f"    {var_var} = {var_var} + d * d;",
            "}",
            f"{var_var} = {var_var} / {float(layout.count)!r};",
        ]), OpClass.REDUCTION, shape, _x, mean, requires_grad=False)

        normalized = context.emit(
            f"{operation}_normalized", norm_var,
            f"let {norm_var} = ({read(_x)} - {mean_var}) / sqrt({var_var} + {f32(NORM_EPSILON)});",
            OpClass.REDUCTION, shape, _x, mean, variance, requires_grad=False)

        gamma_mode = broadcast_mode(_gamma.shape, shape)
        beta_mode = broadcast_mode(_beta.shape, shape)
        gamma_at = read(_gamma, broadcast_index(gamma_mode, "index", shape))
        beta_at = read(_beta, broadcast_index(beta_mode, "index", shape))
        node = context.emit(
            operation, result, f"let {result} = {gamma_at} * {norm_var} + {beta_at};",
            OpClass.REDUCTION, shape, _x, _gamma, _beta, mean, variance, normalized,
            read_modes=["identity", gamma_mode, beta_mode, "identity", "identity", "identity"],
            requires_grad=_x.requires_grad or _gamma.requires_grad or _beta.requires_grad,
        )
        return node

    def backward(node, grad, bw):
        x, gamma, beta, mean = node.dependencies[:4]
        layout = _Layout(axis, node.shape)
        count = u32(layout.count)
        epsilon = f32(NORM_EPSILON)
        n = float(layout.count)

        if bw.needs_grad(node, 1) or bw.needs_grad(node, 2):
            p = f"{node.variable}_bw"
            bw.emit(
                f"let {p}_mean = {bw.saved(mean)};",
                f"let {p}_base = {layout.base('index')};",
                f"var {p}_var = 0.0;",
                f"for (var k = 0u; k < {count}; k = k + 1u) {{",
                f"    let d = {bw.read(x, layout.element(f'{p}_base', 'k'))} - {p}_mean;",
                f"    {p}_var = {p}_var + d * d;",
                "}",
                f"let {p}_xhat = ({bw.read(x, 'index')} - {p}_mean)"
                f" / sqrt({p}_var / {n!r} + {epsilon});",
            )
            if bw.needs_grad(node, 1):
                bw.accumulate(node, 1, f"{grad} * {p}_xhat")
            if bw.needs_grad(node, 2):
                bw.accumulate(node, 2, grad)

        flow = bw.upstream(node)
        if flow is None or not bw.needs_grad(node, 0):
            return
        gamma_mode = node.read_modes[1]

        def gamma_at(i):
            return bw.read(gamma, broadcast_index(gamma_mode, i, node.shape))

        bw.pull(node, 0, [
            f"let base = {layout.base('index')};",
            f"let m = {bw.saved(mean)};",
            "var v = 0.0;",
            f"for (var k = 0u; k < {count}; k = k + 1u) {{",
            f"    let d = {bw.read(x, layout.element('base', 'k'))} - m;",
            "    v = v + d * d;",
            "}",
            f"let inv = 1.0 / sqrt(v / {n!r} + {epsilon});",
            "var s1 = 0.0;",
            "var s2 = 0.0;",
            f"for (var k = 0u; k < {count}; k = k + 1u) {{",
            f"    let e = {layout.element('base', 'k')};",
            f"    let gk = {flow}(e) * {gamma_at('e')};",
            "    s1 = s1 + gk;",
            f"    s2 = s2 + gk * ({bw.read(x, 'e')} - m) * inv;",
            "}",
            f"let xhat = ({bw.read(x, 'index')} - m) * inv;",
            f"let g = inv / {n!r} * ({n!r} * {flow}(index) * {gamma_at('index')} - s1 - xhat * s2);",
        ], "g")

    def build(x, gamma, beta):
        return memo(forward, backward, x, gamma, beta, infer=infer, operation=operation)

    build.__name__ = operation
    return build


batch_norm = _norm("batch_norm", "batch")
batch_norm.__doc__ = "Normalize each feature over the batch axis of an [N, F] input."

layer_norm = _norm("layer_norm", "feature")
layer_norm.__doc__ = "Normalize each row over its features."
