import numpy as np
import pytest

from minidiff import (
    SGD,
    FieldKind,
    L1Loss,
    MSELoss,
    Module,
    Node,
    Parameter,
    matmul,
    tensor,
    zeros,
)


class Linear(Module):
    def __init__(self, num_inputs, num_outputs):
        super().__init__()
        self.add_parameter("weights", zeros((num_inputs, num_outputs)))
        self.add_parameter("bias", zeros((1, num_outputs)))
        self.add_data("num_inputs", num_inputs)

    def forward(self, x):
        return matmul(x, self.weights.value) + self.bias.value


class TwoLayer(Module):
    def __init__(self):
        super().__init__()
        self.add_module("layer1", Linear(2, 3))
        self.add_module("layer2", Linear(3, 1))
        self.add_parameter("scale", Node(1.0))

    def forward(self, x):
        return self.layer2(self.layer1(x).relu()) * self.scale.value.value


def test_parameters_are_collected_in_registration_order():
    model = TwoLayer()
    names = [name for name, _ in model.named_parameters()]
    assert names == ["layer1.weights", "layer1.bias", "layer2.weights", "layer2.bias", "scale"]
    assert len(model.parameters()) == 5
    assert [type(m).__name__ for m in model.modules()] == ["TwoLayer", "Linear", "Linear"]
    assert model.children() == [model.layer1, model.layer2]


def test_fields_are_read_through_the_registry():
    layer = Linear(2, 3)
    assert isinstance(layer.weights, Parameter)
    assert layer.num_inputs == 2
    assert layer._fields["num_inputs"].kind is FieldKind.PLAIN_DATA
    with pytest.raises(AttributeError):
        layer.missing


def test_reregistering_with_another_kind_fails():
    layer = Linear(2, 3)
    with pytest.raises(ValueError):
        layer.add_data("weights", 1.0)
    with pytest.raises(TypeError):
        layer.add_module("child", object())


def test_train_and_eval_propagate():
    model = TwoLayer()
    assert model.training
    model.eval()
    assert not any(m.training for m in model.modules())
    model.train()
    assert all(m.training for m in model.modules())


def test_parameters_must_be_leaves():
    with pytest.raises(ValueError):
        Parameter(Node(1.0) * 2.0)
    with pytest.raises(TypeError):
        Parameter(1.0)


def test_parameter_update_replaces_the_leaf():
    p = Parameter(tensor([1.0, 2.0]), "w")
    old = p.value
    p.update(np.array([3.0, 4.0]))
    assert p.value is not old
    assert p.value.is_leaf() and p.value.requires_grad
    assert p.value.name == "w"
    assert p.value.tolist() == [3.0, 4.0]
    assert not p.has_derivative

    s = Parameter(Node(1.0))
    s.update(5)
    assert s.value.value == 5.0


def test_module_zero_grad():
    model = TwoLayer()
    x = tensor([[1.0, -1.0]], requires_grad=False)
    model(x).sum().backward()
    model.zero_grad()
    for p in model.parameters():
        d = p.derivative
        assert np.all((d.to_numpy() if hasattr(d, "to_numpy") else d) == 0.0)


def test_sgd_step_on_nodes():
    w = Parameter(Node(2.0))
    loss = MSELoss()(w.value * 3.0, 0.0)
    loss.backward()
    assert w.derivative == pytest.approx(2 * 6.0 * 3.0)
    SGD([w], lr=0.01).step()
    assert w.value.value == pytest.approx(2.0 - 0.01 * 36.0)


def test_sgd_skips_parameters_without_gradients():
    used = Parameter(Node(1.0))
    unused = Parameter(Node(1.0))
    (used.value * 2.0).backward()
    SGD([used, unused], lr=0.5).step()
    assert used.value.value == 0.0
    assert unused.value.value == 1.0


def test_sgd_momentum_and_maximise():
    p = Parameter(Node(0.0))
    optim = SGD([p], lr=1.0, momentum=0.5)
    for _ in range(2):
        (p.value * 1.0).backward()
        optim.step()
    # buffers: 1, then 0.5 * 1 + 1
    assert p.value.value == pytest.approx(-2.5)

    q = Parameter(Node(0.0))
    (q.value * 1.0).backward()
    SGD([q], lr=1.0, maximise=True).step()
    assert q.value.value == 1.0

    with pytest.raises(ValueError):
        SGD([q], nesterov=True)


def test_gradient_clipping():
    p = Parameter(tensor([0.0, 0.0]))
    (p.value * tensor([3.0, 4.0], requires_grad=False)).sum().backward()
    SGD([p], lr=1.0, grad_clip_norm=1.0).step()
    np.testing.assert_allclose(p.value.to_numpy(), [-0.6, -0.8])

    q = Parameter(tensor([0.0, 0.0]))
    (q.value * tensor([3.0, -0.5], requires_grad=False)).sum().backward()
    SGD([q], lr=1.0, grad_clip_value=1.0).step()
    np.testing.assert_allclose(q.value.to_numpy(), [-1.0, 0.5])


def test_losses_over_node_lists():
    actual = [Node(1.0), Node(4.0)]
    target = [Node(2.0, requires_grad=False), 2.0]
    mse = MSELoss()(actual, target)
    assert mse.value == pytest.approx((1.0 + 4.0) / 2)
    l1 = L1Loss()(actual, target)
    assert l1.value == pytest.approx((1.0 + 2.0) / 2)
    l1.backward()
    assert actual[0].derivative == pytest.approx(-0.5)
    assert actual[1].derivative == pytest.approx(0.5)

    with pytest.raises(ValueError):
        MSELoss()(actual, [1.0])


def test_losses_over_tensors():
    actual = tensor([[1.0, 2.0], [3.0, 4.0]])
    target = tensor([[1.0, 0.0], [5.0, 4.0]], requires_grad=False)
    mse = MSELoss()
    value = mse(actual, target)
    assert value.item() == pytest.approx((4.0 + 4.0) / 4)
    assert repr(mse) == "MSELoss(value=2.0)"
    value.backward()
    np.testing.assert_allclose(actual.derivative.to_numpy(), [[0.0, 1.0], [-1.0, 0.0]])

    assert L1Loss()(actual, target).item() == pytest.approx(1.0)
    with pytest.raises(TypeError):
        L1Loss()("a", "b")


def test_training_reduces_the_loss():
    rng = np.random.default_rng(0)
    x_np = rng.uniform(-1, 1, size=(16, 2))
    y_np = x_np @ np.array([[1.5], [-2.0]]) + 0.5
    x = tensor(x_np.tolist(), requires_grad=False)
    y = tensor(y_np.tolist(), requires_grad=False)

    model = Linear(2, 1)
    optim = SGD(model.parameters(), lr=0.2)
    loss_fn = MSELoss()
    losses = []
    for _ in range(50):
        model.zero_grad()
        loss = loss_fn(model(x), y)
        loss.backward()
        optim.step()
        losses.append(loss.item())
    assert losses[-1] < losses[0] * 0.05
