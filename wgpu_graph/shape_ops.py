"""Reshape: a pure reinterpretation of the same elements."""

from wgpu_graph.errors import ShapeMismatchError
from wgpu_graph.node import Node, as_shape, memo, numel, shape_of


def reshape(x, shape):
    """View ``x`` with a new shape of equal element count; no data moves."""
    target = as_shape(shape)

    def infer(x):
        source = shape_of(x)
        if numel(source) != numel(target):
            raise ShapeMismatchError("reshape", source, target,
                                     detail="element counts differ")
        return target

    def forward(context, x):
        infer(x)
        _x = context.gen(x)
        if _x.constant:
            return _x
        if _x.buffer:
            node = Node(_x.variable, "", _x.op_class, target, context, [_x],
                        operation="reshape", buffer_name=_x.buffer_name)
            node.view_of = _x
            return node
        node = _x.context.emit("reshape", _x.variable, "", _x.op_class, target, _x)
        node.view_of = _x
        return node

    def backward(node, grad, bw):
        bw.accumulate(node, 0, grad)

    return memo(forward, backward, x, infer=infer, operation="reshape")
