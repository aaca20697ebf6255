"""Training loop shared by the example scripts."""

from typing import Iterable

import numpy as np

from wgpu_graph.graph import TensorGraph
from wgpu_graph.tensor import Tensor


def execute_epoch(graph: TensorGraph, tensors: Iterable[Tensor], lr: float) -> float:
    """
    One forward/backward pass followed by a gradient-descent step.

    Args:
        graph: Compiled graph whose output is a per-sample loss
        tensors: Parameters to update
        lr: Learning rate

    Returns:
        Mean loss of the forward pass (before the update).
    """
    result = graph.run(backward=True)
    for tensor in tensors:
        tensor.learn(lr)
    return float(np.mean(result.forward))
