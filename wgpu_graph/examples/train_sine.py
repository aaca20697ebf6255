#!/usr/bin/env python3
"""
Regress sin(x) on [-pi, pi] with a batch-normalized tanh network.

    x[32, 1] -> matmul W1[1, 16] -> batch_norm -> tanh -> matmul W2[16, 1] + b2

Trained with mean squared error.

Usage:
    python -m wgpu_graph.examples.train_sine
"""

import logging

import numpy as np

from wgpu_graph import (
    TensorGraph, add, batch_norm, matmul, mean_squared_error, tanh,
)
from wgpu_graph.config import configure_logging
from wgpu_graph.examples.common import execute_epoch

logger = logging.getLogger(__name__)

BATCH = 32
HIDDEN = 16


def build_sine_graph(seed: int = 0):
    """Return (graph, parameters) compiled on the per-sample squared error."""
    xs = np.linspace(-np.pi, np.pi, BATCH, dtype=np.float32).reshape(BATCH, 1)

    graph = TensorGraph(seed=seed)
    X = graph.input([BATCH, 1], "X").set(xs)
    Y = graph.input([BATCH, 1], "Y").set(np.sin(xs))

    W1 = graph.tensor([1, HIDDEN], "W1").xavier_init()
    gamma = graph.tensor([HIDDEN], "gamma").ones()
    beta = graph.tensor([HIDDEN], "beta").zeros()
    W2 = graph.tensor([HIDDEN, 1], "W2").xavier_init()
    b2 = graph.tensor([1], "b2").zeros()

    hidden = tanh(batch_norm(matmul(X, W1), gamma, beta))
    prediction = add(matmul(hidden, W2), b2)
    loss = mean_squared_error(prediction, Y)

    graph.compile(graph.output(loss), [BATCH, 1])
    return graph, [W1, gamma, beta, W2, b2]


def main(epochs: int = 2000, lr: float = 0.002):
    configure_logging()
    print("wgpu_graph sine regression")
    print("=" * 50)

    graph, params = build_sine_graph()
    print(f"Kernels: {len(graph.kernels)} forward, {len(graph.backward_kernels)} backward")

    loss = float("nan")
    for epoch in range(epochs):
        loss = execute_epoch(graph, params, lr)
        if epoch % 200 == 0 or epoch == epochs - 1:
            print(f"Epoch {epoch + 1:5d}/{epochs}  mse={loss:.5f}")

    graph.destroy()
    return loss


if __name__ == "__main__":
    main()
