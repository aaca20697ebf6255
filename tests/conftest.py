"""Shared fixtures: a fresh graph per test, GPU tests skip without an adapter."""

import pytest

from wgpu_graph import TensorGraph, has_adapter


@pytest.fixture
def graph():
    """Host-only graph; compiling it is fine, running it needs a device."""
    return TensorGraph(seed=0)


@pytest.fixture
def gpu_graph():
    if not has_adapter():
        pytest.skip("no wgpu adapter available")
    g = TensorGraph(seed=0)
    yield g
    g.destroy()
