"""Forward values and gradients on the device, checked against numpy.

Skipped when no wgpu adapter is available.
"""

import numpy as np
import pytest

from wgpu_graph import (
    add, batch_norm, binary_cross_entropy, cross_entropy, div, dot, dropout, layer_norm,
    leaky_relu, matmul, mean, mean_squared_error, mult, relu, reshape, sigmoid, softmax,
    sum as reduce_sum, tanh, transpose,
)

RNG = np.random.default_rng(1234)


def _random(*shape):
    return RNG.standard_normal(shape).astype(np.float32)


# ---- Forward ----

def test_identity_matmul(gpu_graph):
    X = gpu_graph.input([2, 2], "X").set([[1, 2], [3, 4]])
    W = gpu_graph.tensor([2, 2], "W").set(np.eye(2))
    b = gpu_graph.tensor([2], "b").zeros()
    gpu_graph.compile(matmul(X, W) + b, [2, 2])
    forward, _ = gpu_graph.run(backward=False)
    np.testing.assert_allclose(forward, [1, 2, 3, 4])


def test_dense_relu_forward(gpu_graph):
    x, w, b = _random(4, 3), _random(3, 2), _random(2)
    X = gpu_graph.input([4, 3], "X").set(x)
    W = gpu_graph.tensor([3, 2], "W").set(w)
    B = gpu_graph.tensor([2], "b").set(b)
    gpu_graph.compile(relu(add(matmul(X, W), B)), [4, 2])
    forward = gpu_graph.run(backward=False).forward
    np.testing.assert_allclose(forward, np.maximum(x @ w + b, 0).ravel(), rtol=1e-5, atol=1e-5)


def test_softmax_rows_sum_to_one(gpu_graph):
    x = _random(3, 5) * 4
    X = gpu_graph.input([3, 5], "X").set(x)
    gpu_graph.compile(softmax(X), [3, 5])
    forward = gpu_graph.run(backward=False).forward.reshape(3, 5)
    np.testing.assert_allclose(forward.sum(axis=1), np.ones(3), rtol=1e-5)
    expected = np.exp(x - x.max(axis=1, keepdims=True))
    expected /= expected.sum(axis=1, keepdims=True)
    np.testing.assert_allclose(forward, expected, rtol=1e-4, atol=1e-6)


def test_reshape_and_transpose(gpu_graph):
    x = np.arange(6, dtype=np.float32)
    X = gpu_graph.input([6], "X").set(x)
    gpu_graph.compile(transpose(reshape(X, [2, 3])), [3, 2])
    forward = gpu_graph.run(backward=False).forward
    np.testing.assert_array_equal(forward, x.reshape(2, 3).T.ravel())


def test_update_after_compile_reaches_device(gpu_graph):
    X = gpu_graph.input([4], "X").set([1, 2, 3, 4])
    gpu_graph.compile(X * 2.0, [4])
    np.testing.assert_allclose(gpu_graph.run(backward=False).forward, [2, 4, 6, 8])
    X.set([0, 1, 0, 1])
    np.testing.assert_allclose(gpu_graph.run(backward=False).forward, [0, 2, 0, 2])


def test_recompile_replaces_kernels(gpu_graph):
    X = gpu_graph.input([4, 3], "X").set(_random(4, 3))
    W = gpu_graph.tensor([3, 2], "W").set(_random(3, 2))
    root = sigmoid(matmul(X, W))
    gpu_graph.compile(root, [4, 2])
    first = gpu_graph.run().forward
    def layout():
        return [(set(k.inputs), set(k.outputs)) for k in gpu_graph.kernels + gpu_graph.backward_kernels]

    before = layout()
    gpu_graph.compile(root, [4, 2])
    np.testing.assert_array_equal(gpu_graph.run().forward, first)
    assert layout() == before


# ---- Gradients ----

def test_bce_of_one_half_is_ln2(gpu_graph):
    P = gpu_graph.tensor([2], "P").set([0.5, 0.5])
    Y = gpu_graph.input([2], "Y").set([1.0, 0.0])
    gpu_graph.compile(binary_cross_entropy(P, Y), [2])
    forward, gradients = gpu_graph.run()
    np.testing.assert_allclose(forward, [np.log(2.0)] * 2, atol=1e-4)
    # (p - y) / (p (1 - p)) at p = 0.5
    np.testing.assert_allclose(gradients["P"], [-2.0, 2.0], rtol=1e-4)


def test_sigmoid_bce_at_zero_weights(gpu_graph):
    x = _random(4, 2)
    y = np.array([[0], [1], [1], [0]], dtype=np.float32)
    X = gpu_graph.input([4, 2], "X").set(x)
    Y = gpu_graph.input([4, 1], "Y").set(y)
    W = gpu_graph.tensor([2, 1], "W")
    gpu_graph.compile(binary_cross_entropy(sigmoid(matmul(X, W)), Y), [4, 1])
    forward, gradients = gpu_graph.run()
    np.testing.assert_allclose(forward, np.full(4, np.log(2.0)), rtol=1e-5)
    np.testing.assert_allclose(gradients["W"], (x.T @ (0.5 - y)).ravel(), rtol=1e-4, atol=1e-5)
    np.testing.assert_array_equal(W.grad(), gradients["W"])


def test_mse_gradient(gpu_graph):
    p, t = _random(6), _random(6)
    P = gpu_graph.tensor([6], "P").set(p)
    T = gpu_graph.input([6], "T").set(t)
    gpu_graph.compile(mean_squared_error(P, T), [6])
    forward, gradients = gpu_graph.run()
    np.testing.assert_allclose(forward, (p - t) ** 2, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(gradients["P"], 2 * (p - t), rtol=1e-5, atol=1e-6)
    assert set(gradients) == {"P"}


def test_dense_layer_gradients(gpu_graph):
    x, w, b, y = _random(4, 3), _random(3, 2), _random(2), _random(4, 2)
    X = gpu_graph.input([4, 3], "X").set(x)
    W = gpu_graph.tensor([3, 2], "W").set(w)
    B = gpu_graph.tensor([2], "b").set(b)
    Y = gpu_graph.input([4, 2], "Y").set(y)
    gpu_graph.compile(mean_squared_error(add(matmul(X, W), B), Y), [4, 2])
    _, gradients = gpu_graph.run()

    upstream = 2 * (x @ w + b - y)
    np.testing.assert_allclose(gradients["W"], (x.T @ upstream).ravel(), rtol=1e-4, atol=1e-4)
    np.testing.assert_allclose(gradients["b"], upstream.sum(axis=0), rtol=1e-4, atol=1e-4)


def test_shared_value_gradients_sum(gpu_graph):
    x, w = _random(4, 4), _random(4, 4)
    X = gpu_graph.tensor([4, 4], "X").set(x)
    W = gpu_graph.tensor([4, 4], "W").set(w)
    a = add(X, 1.0)
    gpu_graph.compile(add(a, matmul(a, W)), [4, 4])
    forward, gradients = gpu_graph.run()

    a_np = x + 1.0
    ones = np.ones((4, 4), dtype=np.float32)
    np.testing.assert_allclose(forward, (a_np + a_np @ w).ravel(), rtol=1e-5, atol=1e-5)
    np.testing.assert_allclose(gradients["X"], (ones + ones @ w.T).ravel(), rtol=1e-5, atol=1e-5)
    np.testing.assert_allclose(gradients["W"], (a_np.T @ ones).ravel(), rtol=1e-5, atol=1e-4)


def test_reduction_gradients(gpu_graph):
    a, v = _random(3, 4), _random(4)
    A = gpu_graph.tensor([3, 4], "A").set(a)
    V = gpu_graph.tensor([4], "v").set(v)
    total = add(add(reduce_sum(A), mean(A)), reshape(dot(A, V), [3, 1]))
    gpu_graph.compile(total, [3, 1])
    forward, gradients = gpu_graph.run()

    np.testing.assert_allclose(
        forward, a.sum(axis=1) + a.mean(axis=1) + a @ v, rtol=1e-5, atol=1e-5)
    expected_a = np.ones((3, 4)) * (1.0 + 1.0 / 4) + np.tile(v, (3, 1))
    np.testing.assert_allclose(gradients["A"], expected_a.ravel(), rtol=1e-5, atol=1e-5)
    np.testing.assert_allclose(gradients["v"], a.sum(axis=0), rtol=1e-5, atol=1e-5)


def test_cross_entropy(gpu_graph):
    p = np.array([[0.7, 0.2, 0.1], [0.1, 0.3, 0.6]], dtype=np.float32)
    y = np.array([[1, 0, 0], [0, 0, 1]], dtype=np.float32)
    P = gpu_graph.tensor([2, 3], "P").set(p)
    Y = gpu_graph.input([2, 3], "Y").set(y)
    gpu_graph.compile(cross_entropy(P, Y), [2])
    forward, gradients = gpu_graph.run()
    np.testing.assert_allclose(forward, -np.log([0.7, 0.6]), rtol=1e-5)
    np.testing.assert_allclose(gradients["P"], (-y / p).ravel(), rtol=1e-5)


def test_softmax_gradient(gpu_graph):
    x, w = _random(2, 3), _random(2, 3)
    X = gpu_graph.tensor([2, 3], "X").set(x)
    Wt = gpu_graph.input([2, 3], "Wt").set(w)
    gpu_graph.compile(softmax(X) * Wt, [2, 3])
    _, gradients = gpu_graph.run()

    s = np.exp(x - x.max(axis=1, keepdims=True))
    s /= s.sum(axis=1, keepdims=True)
    expected = s * (w - (w * s).sum(axis=1, keepdims=True))
    np.testing.assert_allclose(gradients["X"], expected.ravel(), rtol=1e-4, atol=1e-5)


# ---- Activations, division, broadcasting ----

@pytest.mark.parametrize("op, derivative", [
    (relu, lambda x: (x > 0).astype(np.float32)),
    (lambda x: leaky_relu(x, 0.1), lambda x: np.where(x > 0, 1.0, 0.1)),
    (tanh, lambda x: 1.0 - np.tanh(x) ** 2),
])
def test_activation_gradients(gpu_graph, op, derivative):
    x, w = _random(3, 4), _random(3, 4)
    X = gpu_graph.tensor([3, 4], "X").set(x)
    Wt = gpu_graph.input([3, 4], "Wt").set(w)
    gpu_graph.compile(op(X) * Wt, [3, 4])
    _, gradients = gpu_graph.run()
    np.testing.assert_allclose(gradients["X"], (w * derivative(x)).ravel(), rtol=1e-4, atol=1e-5)


def test_div_gradients(gpu_graph):
    a = _random(2, 3)
    b = RNG.uniform(0.5, 2.0, size=(2, 3)).astype(np.float32)
    A = gpu_graph.tensor([2, 3], "A").set(a)
    B = gpu_graph.tensor([2, 3], "B").set(b)
    gpu_graph.compile(div(A, B), [2, 3])
    forward, gradients = gpu_graph.run()
    np.testing.assert_allclose(forward, (a / b).ravel(), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(gradients["A"], (1.0 / b).ravel(), rtol=1e-5)
    np.testing.assert_allclose(gradients["B"], (-a / b ** 2).ravel(), rtol=1e-4, atol=1e-6)


def test_column_and_scalar_broadcast_gradients(gpu_graph):
    x, c = _random(3, 4), _random(3, 1)
    X = gpu_graph.tensor([3, 4], "X").set(x)
    C = gpu_graph.tensor([3, 1], "c").set(c)
    S = gpu_graph.tensor([1], "s").set([0.5])
    gpu_graph.compile(mult(X, C) + S, [3, 4])
    forward, gradients = gpu_graph.run()
    np.testing.assert_allclose(forward, (x * c + 0.5).ravel(), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(gradients["X"], np.tile(c, (1, 4)).ravel(), rtol=1e-5)
    np.testing.assert_allclose(gradients["c"], x.sum(axis=1), rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(gradients["s"], [12.0], rtol=1e-5)


def _dropout_keep(size, rate, seed):
    """Host replica of the dropout mask hash."""
    offset = (seed * 2654435761) & 0xFFFFFFFF
    keep = []
    for index in range(size):
        h = (index + offset) & 0xFFFFFFFF
        h = ((h << 13) & 0xFFFFFFFF) ^ h
        h = (h * ((h * h * 15731 + 789221) & 0xFFFFFFFF) + 1376312589) & 0xFFFFFFFF
        keep.append(np.float32(h & 0x7FFFFFFF) / np.float32(2147483647.0) > rate)
    return np.array(keep)


def test_dropout_mask_scale_and_gradient(gpu_graph):
    x = RNG.uniform(1.0, 2.0, size=(8, 8)).astype(np.float32)
    X = gpu_graph.tensor([8, 8], "X").set(x)
    gpu_graph.compile(dropout(X, 0.5, seed=3), [8, 8])
    forward, gradients = gpu_graph.run()

    keep = forward != 0.0
    assert 0 < keep.sum() < 64
    np.testing.assert_array_equal(keep, _dropout_keep(64, 0.5, 3))
    np.testing.assert_allclose(forward[keep], x.ravel()[keep] * 2.0, rtol=1e-6)
    np.testing.assert_allclose(gradients["X"], np.where(keep, 2.0, 0.0), rtol=1e-6)


# ---- Normalization ----

def _layer_norm_reference(x, gamma, beta, eps=1e-4):
    mu = x.mean(axis=1, keepdims=True)
    var = x.var(axis=1, keepdims=True)
    xhat = (x - mu) / np.sqrt(var + eps)
    return xhat, gamma * xhat + beta


def test_layer_norm_forward_and_gradients(gpu_graph):
    x, gamma, beta = _random(3, 4), _random(4), _random(4)
    X = gpu_graph.tensor([3, 4], "X").set(x)
    G = gpu_graph.tensor([4], "gamma").set(gamma)
    B = gpu_graph.tensor([4], "beta").set(beta)
    gpu_graph.compile(layer_norm(X, G, B), [3, 4])
    forward, gradients = gpu_graph.run()

    xhat, expected = _layer_norm_reference(x, gamma, beta)
    np.testing.assert_allclose(forward, expected.ravel(), rtol=1e-3, atol=1e-4)
    np.testing.assert_allclose(gradients["gamma"], xhat.sum(axis=0), rtol=1e-3, atol=1e-4)
    np.testing.assert_allclose(gradients["beta"], np.full(4, 3.0), rtol=1e-5)

    # Upstream is all ones, so dxhat is gamma in every row
    n = 4
    inv = 1.0 / np.sqrt(x.var(axis=1, keepdims=True) + 1e-4)
    dxhat = np.tile(gamma, (3, 1))
    dx = inv / n * (n * dxhat - dxhat.sum(axis=1, keepdims=True)
                    - xhat * (dxhat * xhat).sum(axis=1, keepdims=True))
    np.testing.assert_allclose(gradients["X"], dx.ravel(), rtol=1e-3, atol=1e-3)


def test_batch_norm_forward(gpu_graph):
    x = _random(5, 3) * 2 + 1
    X = gpu_graph.input([5, 3], "X").set(x)
    G = gpu_graph.tensor([3], "gamma").ones()
    B = gpu_graph.tensor([3], "beta").zeros()
    gpu_graph.compile(batch_norm(X, G, B), [5, 3])
    forward = gpu_graph.run(backward=False).forward.reshape(5, 3)

    expected = (x - x.mean(axis=0)) / np.sqrt(x.var(axis=0) + 1e-4)
    np.testing.assert_allclose(forward, expected, rtol=1e-3, atol=1e-4)
    np.testing.assert_allclose(forward.mean(axis=0), np.zeros(3), atol=1e-4)


def test_batch_norm_gradients(gpu_graph):
    x, w = _random(5, 3) * 2 + 1, _random(5, 3)
    gamma, beta = _random(3), _random(3)
    X = gpu_graph.tensor([5, 3], "X").set(x)
    G = gpu_graph.tensor([3], "gamma").set(gamma)
    B = gpu_graph.tensor([3], "beta").set(beta)
    Wt = gpu_graph.input([5, 3], "Wt").set(w)
    gpu_graph.compile(batch_norm(X, G, B) * Wt, [5, 3])
    _, gradients = gpu_graph.run()

    n = 5
    inv = 1.0 / np.sqrt(x.var(axis=0) + 1e-4)
    xhat = (x - x.mean(axis=0)) * inv
    dxhat = w * gamma
    dx = inv / n * (n * dxhat - dxhat.sum(axis=0) - xhat * (dxhat * xhat).sum(axis=0))
    np.testing.assert_allclose(gradients["gamma"], (w * xhat).sum(axis=0), rtol=1e-3, atol=1e-4)
    np.testing.assert_allclose(gradients["beta"], w.sum(axis=0), rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(gradients["X"], dx.ravel(), rtol=1e-3, atol=1e-3)
