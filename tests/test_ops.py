import pytest

from minidiff import Node, ops, tensor
from minidiff.node import ScalarFunction


def test_apply_builds_scalar_graphs():
    x = Node(3.0)
    y = Node(4.0)
    out = ops.apply("add", ops.apply("mul", x, y), ops.apply("neg", x))
    assert out.value == 9.0
    out.backward()
    assert x.derivative == 3.0
    assert y.derivative == 3.0


def test_apply_dispatches_on_tensors():
    a = tensor([[1.0, 2.0], [3.0, 4.0]])
    s = ops.apply("sum", ops.apply("mul", a, 2.0), dim=0)
    assert s.shape == (1, 2)
    assert s.tolist() == [[8.0, 12.0]]
    p = ops.apply("permute", a, order=(1, 0))
    assert p.shares_storage(a)


def test_scalar_only_operations():
    x = Node(0.5)
    ops.apply("leaky_relu", x, 0.1).backward()
    assert x.derivative == 1.0
    with pytest.raises(KeyError, match="no tensor implementation"):
        ops.apply("sin", tensor([1.0]))


def test_tensor_only_operations():
    with pytest.raises(KeyError, match="no scalar implementation"):
        ops.apply("sum", Node(1.0), dim=0)


def test_unknown_operation():
    with pytest.raises(KeyError, match="Unknown operation"):
        ops.apply("conv2d", Node(1.0))


def test_register_custom_operation():
    class Square(ScalarFunction):
        @staticmethod
        def forward(ctx, a):
            ctx.save_for_backward(a)
            return a * a

        @staticmethod
        def backward(ctx, d_output):
            (a,) = ctx.saved_values
            return (2 * a * d_output,)

    ops.register("square", Square)
    assert "square" in ops.available()
    x = Node(3.0)
    out = ops.apply("square", x)
    assert out.value == 9.0
    out.backward()
    assert x.derivative == 6.0

    with pytest.raises(ValueError):
        ops.register("nothing")
