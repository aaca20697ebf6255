"""Host-side parameter store: naming, initializers, size checks, folding."""

import numpy as np
import pytest

from wgpu_graph import InputSizeMismatchError
from wgpu_graph.backward import fold_gradient
from wgpu_graph.node import COL, IDENTITY, ROW, SCALAR


def test_leaves_start_at_zero(graph):
    W = graph.tensor([2, 3], "W")
    assert W.size == 6
    np.testing.assert_array_equal(W.val(), np.zeros(6, dtype=np.float32))
    np.testing.assert_array_equal(W.grad(), np.zeros(6, dtype=np.float32))


def test_set_checks_element_count(graph):
    X = graph.input([2, 2], "X")
    X.set([[1, 2], [3, 4]])
    np.testing.assert_array_equal(X.val(), [1, 2, 3, 4])
    with pytest.raises(InputSizeMismatchError) as info:
        X.set([1, 2, 3])
    assert str(info.value) == "Input size mismatch for 'X'. Expected 4, got 3"
    np.testing.assert_array_equal(X.val(), [1, 2, 3, 4])


def test_update_tensor_by_name(graph):
    graph.tensor([3], "b")
    graph.update_tensor("b", [1.0, 2.0, 3.0])
    assert graph.input_data["b"].dtype == np.float32
    with pytest.raises(KeyError):
        graph.update_tensor("missing", [1.0])


def test_names_are_validated_and_unique(graph):
    graph.tensor([2], "W")
    with pytest.raises(ValueError):
        graph.input([2], "W")
    with pytest.raises(ValueError):
        graph.tensor([2], "1W")
    with pytest.raises(ValueError):
        graph.tensor([2], "W-b")


def test_invalid_shapes(graph):
    with pytest.raises(ValueError):
        graph.tensor([2, 2, 2], "T")
    with pytest.raises(ValueError):
        graph.tensor([0], "Z")


def test_fill_helpers(graph):
    W = graph.tensor([4], "W").fill(2.5)
    np.testing.assert_array_equal(W.val(), np.full(4, 2.5))
    W.mul(2.0)
    np.testing.assert_array_equal(W.val(), np.full(4, 5.0))
    W.set([0.4, 0.6, 1.4, -0.6]).round()
    np.testing.assert_array_equal(W.val(), [0.0, 1.0, 1.0, -1.0])
    np.testing.assert_array_equal(W.ones().val(), np.ones(4))
    np.testing.assert_array_equal(W.zeros().val(), np.zeros(4))


def test_random_initializers_respect_limits(graph):
    W = graph.tensor([20, 30], "W")
    W.xavier_init()
    limit = np.sqrt(6.0 / 50)
    assert np.all(np.abs(W.val()) <= limit + 1e-6)
    assert W.val().std() > 0

    W.he_init(scale=0.5)
    assert np.all(np.abs(W.val()) <= np.sqrt(2.0 / 20) * 0.5 + 1e-6)

    W.uniform(3.0, 4.0)
    assert np.all((W.val() >= 3.0) & (W.val() <= 4.0))

    W.rand()
    assert np.all((W.val() >= 0.0) & (W.val() <= 1.0))


def test_randn_is_standard_normal(graph):
    W = graph.tensor([101, 99], "W").randn()
    values = W.val()
    assert values.size == 101 * 99
    assert abs(values.mean()) < 0.05
    assert abs(values.std() - 1.0) < 0.05


def test_seed_makes_initialization_reproducible():
    from wgpu_graph import TensorGraph

    first = TensorGraph(seed=7).tensor([8], "W").randn().val()
    second = TensorGraph(seed=7).tensor([8], "W").randn().val()
    np.testing.assert_array_equal(first, second)


def test_learn_steps_against_gradient(graph):
    W = graph.tensor([3], "W").set([1.0, 2.0, 3.0])
    graph.gradient_data["W"] = np.array([1.0, -1.0, 0.5], dtype=np.float32)
    W.learn(0.1)
    np.testing.assert_allclose(W.val(), [0.9, 2.1, 2.95], rtol=1e-6)


# ---- Gradient folding ----

def test_fold_identity_and_scalar():
    data = np.arange(6, dtype=np.float32)
    np.testing.assert_array_equal(fold_gradient(data, IDENTITY, 6), data)
    np.testing.assert_array_equal(fold_gradient(data, SCALAR, 1), [15.0])


def test_fold_row_broadcast_sums_over_rows():
    data = np.arange(6, dtype=np.float32)  # [[0, 1, 2], [3, 4, 5]]
    np.testing.assert_array_equal(fold_gradient(data, ROW, 3), [3.0, 5.0, 7.0])


def test_fold_column_broadcast_sums_over_columns():
    data = np.arange(6, dtype=np.float32)
    np.testing.assert_array_equal(fold_gradient(data, COL, 2), [3.0, 12.0])
