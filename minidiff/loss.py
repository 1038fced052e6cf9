from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Union

from minidiff.node import Node
from minidiff.tensor import Tensor

Value = Union[Node, Tensor]


class Loss(ABC):
    """
    `minidiff.Loss` is the abstract base class that handles cost function computation.

    Losses accept a pair of `Node`s, a pair of equal-length lists of `Node`s, or a pair of
    `Tensor`s (broadcast against each other) and return the mean over the elements.
    """

    def __init__(self) -> None:
        self.loss_value: Value | None = None

    @abstractmethod
    def elementwise(self, actual: Value, target: Value) -> Value: ...

    def loss(self, actual: Any, target: Any) -> Value:
        """
        Calculate the mean loss between the actual and target values.

        Args:
            actual (Union[minidiff.Node, list[minidiff.Node], minidiff.Tensor]): The actual output value(s).
            target (Union[minidiff.Node, float, list[minidiff.Node | float], minidiff.Tensor]): The target output value(s).

        Returns:
            Union[minidiff.Node, minidiff.Tensor]: The computed loss value.
        """
        if isinstance(actual, list):
            if not isinstance(target, list) or len(actual) != len(target):
                raise ValueError("Actual and target lists must have the same length.")
            if not actual:
                raise ValueError("Cannot compute a loss over empty lists.")
            total: Value = Node(0.0, requires_grad=False)
            for actual_datapoint, target_datapoint in zip(actual, target):
                total = total + self.elementwise(actual_datapoint, target_datapoint)
            self.loss_value = total / float(len(actual))
        elif isinstance(actual, Tensor) or isinstance(target, Tensor):
            self.loss_value = self.elementwise(actual, target).mean()
        elif isinstance(actual, Node):
            self.loss_value = self.elementwise(actual, target)
        else:
            raise TypeError(
                f"Values passed into {type(self).__name__}.loss() must be Nodes, lists of Nodes or Tensors"
            )
        return self.loss_value

    def __call__(self, actual: Any, target: Any) -> Value:
        return self.loss(actual, target)

    def __repr__(self) -> str:
        if self.loss_value is None:
            return f"{type(self).__name__}(value=None)"
        return f"{type(self).__name__}(value={round(self.loss_value.item(), 4)})"


class L1Loss(Loss):
    def elementwise(self, actual: Value, target: Value) -> Value:
        diff = actual - target
        if isinstance(diff, Tensor):
            # |d| = relu(d) + relu(-d)
            return diff.relu() + (-diff).relu()
        return abs(diff)


class MSELoss(Loss):
    def elementwise(self, actual: Value, target: Value) -> Value:
        diff = actual - target
        return diff * diff
