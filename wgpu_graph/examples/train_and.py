#!/usr/bin/env python3
"""
Learn the AND gate with a 2-4-1 MLP.

Hidden layer: leaky ReLU. Output: sigmoid trained with binary cross-entropy.
The whole batch of four truth-table rows runs as one graph; every epoch is
a single forward+backward submission followed by a host-side SGD step.

Usage:
    python -m wgpu_graph.examples.train_and
"""

import logging

import numpy as np

from wgpu_graph import (
    TensorGraph, add, binary_cross_entropy, format_kernels, leaky_relu, matmul, sigmoid,
)
from wgpu_graph.config import configure_logging
from wgpu_graph.examples.common import execute_epoch

logger = logging.getLogger(__name__)

AND_INPUTS = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=np.float32)
AND_TARGETS = np.array([[0], [0], [0], [1]], dtype=np.float32)


def build_and_graph(seed: int = 0):
    """Return (graph, parameters, prediction builder), compiled on the BCE loss."""
    graph = TensorGraph(seed=seed)
    X = graph.input([4, 2], "X").set(AND_INPUTS)
    Y = graph.input([4, 1], "Y").set(AND_TARGETS)

    W1 = graph.tensor([2, 4], "W1").he_init()
    b1 = graph.tensor([4], "b1").zeros()
    W2 = graph.tensor([4, 1], "W2").xavier_init()
    b2 = graph.tensor([1], "b2").zeros()

    hidden = leaky_relu(add(matmul(X, W1), b1))
    prediction = sigmoid(add(matmul(hidden, W2), b2))
    loss = binary_cross_entropy(prediction, Y)

    graph.compile(graph.output(loss), [4, 1])
    return graph, [W1, b1, W2, b2], prediction


def main(epochs: int = 2000, lr: float = 0.01):
    configure_logging()
    print("wgpu_graph AND gate")
    print("=" * 50)

    graph, params, prediction = build_and_graph()
    logger.debug("\n%s", format_kernels(graph))
    print(f"Kernels: {len(graph.kernels)} forward, {len(graph.backward_kernels)} backward")

    loss = float("nan")
    for epoch in range(epochs):
        loss = execute_epoch(graph, params, lr)
        if epoch % 200 == 0 or epoch == epochs - 1:
            print(f"Epoch {epoch + 1:5d}/{epochs}  loss={loss:.4f}")

    # Evaluate the trained parameters on the prediction itself
    graph.compile(prediction, [4, 1])
    outputs = graph.run(backward=False).forward
    for row, out in zip(AND_INPUTS, outputs):
        print(f"  {int(row[0])} AND {int(row[1])} -> {out:.3f}")
    graph.destroy()
    return loss


if __name__ == "__main__":
    main()
