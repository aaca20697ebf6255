"""
Named parameter tensors and external inputs.

Both are leaves of the computation graph backed by a storage buffer. Host
values live in ``graph.input_data`` and gradients in
``graph.gradient_data``; once the graph is compiled, every ``set`` also
writes the device buffer.
"""

import math
import re
import logging
from typing import Sequence

import numpy as np

from wgpu_graph.errors import InputSizeMismatchError
from wgpu_graph.node import Composable, Node, OpClass, as_shape, memo, numel

logger = logging.getLogger(__name__)

_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def _leaf_forward(context, leaf):
    arena = context.arena
    node = Node(leaf.buffer_name, "", OpClass.REGULAR, leaf.shape, context,
                operation=leaf.name, buffer_name=leaf.buffer_name,
                requires_grad=leaf.requires_grad)
    node.leaf = leaf
    arena.leaves[leaf.name] = node
    return node


class Leaf(Composable):
    """Buffer-backed graph leaf with host-side initializers."""

    kind = "tensor"
    requires_grad = True

    def __init__(self, graph, shape: Sequence[int], name: str):
        """
        Args:
            graph: Owning TensorGraph
            shape: 1-D or 2-D shape
            name: Identifier-safe name, unique within the graph
        """
        if not _NAME.match(name):
            raise ValueError(f"Tensor name '{name}' must be a letter followed by letters, digits or _")
        self.graph = graph
        self.shape = as_shape(shape)
        self.name = name
        self.buffer_name = f"{self.kind}_{name}"
        self.builder = memo(_leaf_forward, None, self,
                            infer=lambda leaf: leaf.shape, operation=name)

    @property
    def size(self) -> int:
        return numel(self.shape)

    def __repr__(self):
        return f"{type(self).__name__}({self.name}, shape={list(self.shape)})"

    # ---- Values ----
    def set(self, data):
        """Replace the values; ``data`` must hold exactly ``size`` elements."""
        array = np.asarray(data, dtype=np.float32).reshape(-1)
        if array.size != self.size:
            raise InputSizeMismatchError(self.name, self.size, array.size)
        self.graph.update_tensor(self.name, array)
        return self

    def val(self) -> np.ndarray:
        return self.graph.input_data[self.name]

    def fill(self, value: float):
        return self.set(np.full(self.size, value, dtype=np.float32))

    def ones(self):
        return self.fill(1.0)

    def zeros(self):
        return self.fill(0.0)

    def mul(self, factor: float):
        """Scale the current values in place."""
        return self.set(self.val() * factor)

    def round(self):
        return self.set(np.round(self.val()))

    # ---- Random initializers ----
    def rand(self):
        """Uniform values in [0, 1)."""
        return self.set(self.graph.rng.random(self.size))

    def uniform(self, low: float, high: float):
        return self.set(self.graph.rng.uniform(low, high, self.size))

    def randn(self):
        """Standard normal values via the Box-Muller transform."""
        count = (self.size + 1) // 2
        u1 = 1.0 - self.graph.rng.random(count)  # (0, 1], keeps log finite
        u2 = self.graph.rng.random(count)
        radius = np.sqrt(-2.0 * np.log(u1))
        theta = 2.0 * np.pi * u2
        values = np.concatenate([radius * np.cos(theta), radius * np.sin(theta)])
        return self.set(values[:self.size])

    def _fans(self):
        if len(self.shape) == 2:
            return self.shape[0], self.shape[1]
        return self.shape[0], self.shape[0]

    def xavier_init(self):
        """Uniform in +-sqrt(6 / (fan_in + fan_out))."""
        fan_in, fan_out = self._fans()
        limit = math.sqrt(6.0 / (fan_in + fan_out))
        return self.uniform(-limit, limit)

    def he_init(self, scale: float = 1.0):
        """Uniform in +-sqrt(2 / fan_in) * scale."""
        fan_in, _ = self._fans()
        limit = math.sqrt(2.0 / fan_in) * scale
        return self.uniform(-limit, limit)


class Tensor(Leaf):
    """Trainable parameter with a value buffer and a gradient buffer."""

    kind = "tensor"
    requires_grad = True

    def grad(self) -> np.ndarray:
        """Gradient from the most recent ``run``."""
        return self.graph.gradient_data[self.name]

    def learn(self, learning_rate: float):
        """One gradient-descent step: value -= learning_rate * grad."""
        return self.set(self.val() - learning_rate * self.grad())


class Input(Leaf):
    """External input: values only, no gradient."""

    kind = "input"
    requires_grad = False
