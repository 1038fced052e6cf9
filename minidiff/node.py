from __future__ import annotations

import math
from typing import Any, Iterable, Optional, Sequence

from minidiff import operators
from minidiff.autodiff import (
    Context,
    Function,
    History,
    backpropagate,
    next_unique_id,
)
from minidiff.errors import GraphConsistencyError, NoGradientError


class Node:
    """
    `minidiff.Node` is a scalar value in a computational graph.

    Arithmetic on nodes returns new nodes whose `history` links back to the operation and
    inputs that produced them. Leaves (nodes without history) receive derivatives when
    `backward` is called on a downstream node.

    Attributes
    ----------
    value (float): The current numeric payload.
    requires_grad (bool): Whether gradient tracking is enabled. A leaf with `requires_grad=False` is a constant.
    history (Optional[minidiff.autodiff.History]): The operation that produced this node. `None` for leaves.
    retains_grad (bool): Whether a non-leaf node also stores its derivative during backpropagation.
    name (str): Label used in graph plots.
    """

    def __init__(
        self,
        value: float,
        requires_grad: bool = True,
        history: Optional[History] = None,
        name: Optional[str] = None,
    ) -> None:
        self.value = float(value)
        self.history = history
        self.requires_grad = requires_grad or history is not None
        self.retains_grad = False
        self._derivative: Optional[float] = None
        self._unique_id = next_unique_id()
        self.name = name if name is not None else f"node{self._unique_id}"

    @property
    def unique_id(self) -> int:
        return self._unique_id

    @property
    def derivative(self) -> float:
        if self._derivative is None:
            raise NoGradientError(
                f"{self.name} has no gradient; run backward() on a value computed from it first"
            )
        return self._derivative

    @property
    def has_derivative(self) -> bool:
        return self._derivative is not None

    def is_leaf(self) -> bool:
        return self.history is None

    def is_constant(self) -> bool:
        return self.history is None and not self.requires_grad

    @property
    def parents(self) -> Iterable[Node]:
        return self.history.inputs if self.history is not None else ()

    def chain_rule(self, d_output: float) -> Iterable[tuple[Node, float]]:
        h = self.history
        if h is None or h.last_fn is None or h.ctx is None:
            raise GraphConsistencyError(f"{self.name} has no history to differentiate")
        return h.last_fn.chain_rule(h.ctx, h.inputs, d_output)

    def accumulate_derivative(self, x: float) -> None:
        if not (self.is_leaf() or self.retains_grad):
            raise GraphConsistencyError(
                f"{self.name} is not a leaf and did not ask to retain its gradient"
            )
        self._derivative = x if self._derivative is None else self._derivative + x

    def retain_grad(self) -> Node:
        self.retains_grad = True
        return self

    def zero_grad(self) -> None:
        self._derivative = 0.0

    def backward(self, d_output: float = 1.0, retain_graph: bool = False) -> None:
        """
        Backpropagates from this node, writing derivatives into every upstream leaf.

        Args:
            d_output (float): Seed derivative, defaults to 1.
            retain_graph (bool): Keep saved values so the graph can be backpropagated again.
        """
        backpropagate(self, d_output, retain_graph=retain_graph)

    def set_value(self, new_value: float) -> None:
        if not isinstance(new_value, (float, int)):
            raise TypeError(f"Node values must be numbers, not {type(new_value).__name__}")
        self.value = float(new_value)

    def detach(self) -> Node:
        return Node(self.value, requires_grad=False)

    def item(self) -> float:
        return self.value

    def __float__(self) -> float:
        return self.value

    def __add__(self, other: float | Node) -> Node:
        return Add.apply(self, other)

    def __radd__(self, other: float | Node) -> Node:
        return Add.apply(other, self)

    def __sub__(self, other: float | Node) -> Node:
        return Sub.apply(self, other)

    def __rsub__(self, other: float | Node) -> Node:
        return Sub.apply(other, self)

    def __mul__(self, other: float | Node) -> Node:
        return Mul.apply(self, other)

    def __rmul__(self, other: float | Node) -> Node:
        return Mul.apply(other, self)

    def __truediv__(self, other: float | Node) -> Node:
        return Div.apply(self, other)

    def __rtruediv__(self, other: float | Node) -> Node:
        return Div.apply(other, self)

    def __pow__(self, other: float | Node) -> Node:
        return Pow.apply(self, other)

    def __rpow__(self, other: float | Node) -> Node:
        return Pow.apply(other, self)

    def __neg__(self) -> Node:
        return Neg.apply(self)

    def __abs__(self) -> Node:
        return Abs.apply(self)

    def __lt__(self, other: float | Node) -> Node:
        return LT.apply(self, other)

    def __gt__(self, other: float | Node) -> Node:
        return LT.apply(other, self)

    def eq(self, other: float | Node) -> Node:
        return EQ.apply(self, other)

    def inv(self) -> Node:
        return Inv.apply(self)

    def exp(self) -> Node:
        return Exp.apply(self)

    def log(self) -> Node:
        return Log.apply(self)

    def sigmoid(self) -> Node:
        return Sigmoid.apply(self)

    def relu(self) -> Node:
        return ReLU.apply(self)

    def leaky_relu(self, leaky_grad: float = 0.01) -> Node:
        return LeakyReLU.apply(self, leaky_grad)

    def tanh(self) -> Node:
        return Tanh.apply(self)

    def sin(self) -> Node:
        return Sin.apply(self)

    def cos(self) -> Node:
        return Cos.apply(self)

    def __repr__(self) -> str:
        grad = round(self._derivative, 4) if self._derivative is not None else None
        return f"{type(self).__name__}(value={round(self.value, 4)}, grad={grad}, requires_grad={self.requires_grad})"


class ScalarFunction(Function):
    """Base class for operations over `Node` payloads (python floats)."""

    @classmethod
    def to_variable(cls, value: Any) -> Node:
        if isinstance(value, Node):
            return value
        if isinstance(value, (int, float)):
            return Node(value, requires_grad=False)
        raise TypeError(
            f"{cls.__name__} expects Nodes or numbers, got {type(value).__name__}"
        )

    @classmethod
    def payload(cls, variable: Node) -> float:
        return variable.value

    @classmethod
    def wrap(cls, output: float, history: Optional[History], inputs: Sequence[float]) -> Node:
        return Node(float(output), requires_grad=history is not None, history=history)


class Add(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float, b: float) -> float:
        return operators.add(a, b)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float, float]:
        return d_output, d_output


class Sub(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float, b: float) -> float:
        return operators.sub(a, b)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float, float]:
        return d_output, -d_output


class Mul(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float, b: float) -> float:
        ctx.save_for_backward(a, b)
        return operators.mul(a, b)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float, float]:
        a, b = ctx.saved_values
        return d_output * b, d_output * a


class Div(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float, b: float) -> float:
        ctx.save_for_backward(a, b)
        return operators.div(a, b)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float, float]:
        a, b = ctx.saved_values
        return operators.div(d_output, b), operators.div(-d_output * a, b * b)


class Inv(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        ctx.save_for_backward(a)
        return operators.inv(a)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (a,) = ctx.saved_values
        return (operators.inv_back(a, d_output),)


class Neg(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        return operators.neg(a)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        return (-d_output,)


class Pow(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float, b: float) -> float:
        out = operators.pow_(a, b)
        ctx.save_for_backward(a, b, out)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float, float]:
        a, b, out = ctx.saved_values
        d_a = d_output * b * operators.pow_(a, b - 1)
        # d/db a^b = a^b ln(a), only defined for positive bases
        d_b = d_output * out * math.log(a) if a > 0 else 0.0
        return d_a, d_b


class Log(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        ctx.save_for_backward(a)
        return operators.log(a)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (a,) = ctx.saved_values
        return (operators.log_back(a, d_output),)


class Exp(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        out = operators.exp(a)
        ctx.save_for_backward(out)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (out,) = ctx.saved_values
        return (d_output * out,)


class Sigmoid(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        out = operators.sigmoid(a)
        ctx.save_for_backward(out)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (out,) = ctx.saved_values
        return (operators.sigmoid_back(out, d_output),)


class ReLU(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        ctx.save_for_backward(a)
        return operators.relu(a)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (a,) = ctx.saved_values
        return (operators.relu_back(a, d_output),)


class LeakyReLU(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float, leaky_grad: float) -> float:
        ctx.save_for_backward(a, leaky_grad)
        return a if a > 0 else leaky_grad * a

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float, float]:
        a, leaky_grad = ctx.saved_values
        return (d_output if a > 0 else d_output * leaky_grad), 0.0


class Tanh(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        out = operators.tanh(a)
        ctx.save_for_backward(out)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (out,) = ctx.saved_values
        return (operators.tanh_back(out, d_output),)


class Sin(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        ctx.save_for_backward(a)
        return operators.sin(a)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (a,) = ctx.saved_values
        return (d_output * operators.cos(a),)


class Cos(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        ctx.save_for_backward(a)
        return operators.cos(a)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (a,) = ctx.saved_values
        return (-d_output * operators.sin(a),)


class Abs(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float) -> float:
        ctx.save_for_backward(a)
        return abs(a)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float]:
        (a,) = ctx.saved_values
        if a > 0:
            return (d_output,)
        if a < 0:
            return (-d_output,)
        return (0.0,)


class LT(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float, b: float) -> float:
        return operators.lt(a, b)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float, float]:
        return 0.0, 0.0


class EQ(ScalarFunction):
    @staticmethod
    def forward(ctx: Context, a: float, b: float) -> float:
        return operators.eq(a, b)

    @staticmethod
    def backward(ctx: Context, d_output: float) -> tuple[float, float]:
        return 0.0, 0.0


def sin(node: Node) -> Node:
    """
    Performs the Sine function to given `minidiff.Node`.

    Args:
        node: The input node for Sine.

    Returns:
        minidiff.Node: A node holding the sine of the input, linked to it through `Sin`.
    """
    return Sin.apply(node)


def cos(node: Node) -> Node:
    return Cos.apply(node)


def tanh(node: Node) -> Node:
    """
    Performs the Tanh (hyperbolic tangent) activation function to given `minidiff.Node`.

    Args:
        node: The input node for Tanh.

    Returns:
        minidiff.Node: A node holding the output of the Tanh activation function.
    """
    return Tanh.apply(node)


def relu(node: Node) -> Node:
    return ReLU.apply(node)


def leaky_relu(node: Node, leaky_grad: float = 0.01) -> Node:
    """
    Performs the LeakyReLU activation function to given `minidiff.Node`.

    Args:
        node (minidiff.Node): The input node for LeakyReLU.
        leaky_grad (float): The negative gradient of the activation function. Defaults to 0.01.

    Returns:
        minidiff.Node: A node holding the output of the LeakyReLU activation function.
    """
    return LeakyReLU.apply(node, leaky_grad)


def sigmoid(node: Node) -> Node:
    return Sigmoid.apply(node)


def exp(node: Node) -> Node:
    return Exp.apply(node)


def log(node: Node) -> Node:
    return Log.apply(node)


def zero_grad(nodes: list[Node]) -> None:
    """
    Performs the operation of zeroing gradients to all nodes in the list of `minidiff.Node`.

    Args:
        nodes: The list of nodes to zero gradients.
    """
    for node in nodes:
        node.zero_grad()
