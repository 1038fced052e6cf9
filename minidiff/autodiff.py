from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Sequence

import numpy as np

from minidiff import config
from minidiff.errors import GraphConsistencyError, MissingContextError

logger = logging.getLogger(__name__)

_unique_ids = itertools.count(1)


def next_unique_id() -> int:
    """
    Returns a process-wide unique integer used as a graph node identity.

    Identity is never derived from the payload: two values holding equal numbers stay
    distinct nodes.
    """
    return next(_unique_ids)


def central_difference(f: Any, *vals: Any, arg: int = 0, epsilon: float = 1e-6) -> float:
    """
    Approximates the derivative of `f` with respect to one positional argument.

    Args:
        f (Callable): Function from n floats to one float.
        *vals (float): The point at which to differentiate.
        arg (int): Index of the argument to differentiate against.
        epsilon (float): Step size of the symmetric difference.

    Returns:
        float: `(f(.., x + eps, ..) - f(.., x - eps, ..)) / (2 * eps)`.
    """
    upper = list(vals)
    lower = list(vals)
    upper[arg] = upper[arg] + epsilon
    lower[arg] = lower[arg] - epsilon
    return (f(*upper) - f(*lower)) / (2.0 * epsilon)


class Variable(Protocol):
    """The interface both `Node` and `Tensor` expose to the graph engine."""

    requires_grad: bool
    retains_grad: bool

    @property
    def unique_id(self) -> int: ...

    def is_leaf(self) -> bool: ...

    def is_constant(self) -> bool: ...

    @property
    def parents(self) -> Iterable["Variable"]: ...

    def chain_rule(self, d_output: Any) -> Iterable[tuple["Variable", Any]]: ...

    def accumulate_derivative(self, x: Any) -> None: ...


class Context:
    """
    `minidiff.autodiff.Context` is the scratch space a `Function.forward` call uses to
    hand values to its paired `Function.backward` call.

    One instance exists per forward invocation. It lives as long as the `History` edge
    that owns it, and its saved values are released once backpropagation through that
    edge has completed (unless the graph is retained).

    Attributes
    ----------
    no_grad (bool): When set, `save_for_backward` stores nothing since backward will never run.
    """

    def __init__(self, no_grad: bool = False) -> None:
        self.no_grad = no_grad
        self._saved_values: Optional[tuple] = None
        self._released = False

    def save_for_backward(self, *values: Any) -> None:
        """
        Stores an ordered sequence of values for the backward pass.

        Args:
            *values: Inputs or intermediates the backward rule will need.
        """
        if self.no_grad:
            return
        self._saved_values = values

    @property
    def saved_values(self) -> tuple:
        if self._released:
            raise MissingContextError(
                "Saved values were released after a previous backward pass; "
                "call backward(..., retain_graph=True) to backpropagate through a graph twice"
            )
        if self._saved_values is None:
            raise MissingContextError(
                "backward read saved values that its forward never stored"
            )
        return self._saved_values

    @property
    def saved_tensors(self) -> tuple:
        return self.saved_values

    def release(self) -> None:
        if self._saved_values is not None:
            self._saved_values = None
            self._released = True


@dataclass
class History:
    """
    Records how a value was produced: the `Function` class, the `Context` of that call,
    and the input values in positional order.

    A `History` is owned by the value it is attached to. Several histories may name the
    same input, which is what makes the graph a DAG rather than a tree.
    """

    last_fn: Optional[type] = None
    ctx: Optional[Context] = None
    inputs: Sequence[Any] = ()


class GradContext:
    """
    `minidiff.autodiff.GradContext` switches graph recording on or off inside a `with` block.

    Contexts nest; leaving one restores the previous mode.
    """

    current_context = None

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.prev_context = None

    def __enter__(self) -> GradContext:
        self.prev_context = GradContext.current_context
        GradContext.current_context = self
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        GradContext.current_context = self.prev_context


def no_grad() -> GradContext:
    return GradContext(enabled=False)


def enable_grad() -> GradContext:
    return GradContext(enabled=True)


def is_grad_enabled() -> bool:
    ctx = GradContext.current_context
    return True if ctx is None else ctx.enabled


class Function:
    """
    `minidiff.autodiff.Function` is the base class of every differentiable operation.

    A Function holds no state of its own. Subclasses implement `forward(ctx, *inputs)`
    over raw payloads and `backward(ctx, d_output)`, which returns one local gradient
    contribution per positional input, already multiplied by `d_output`.

    Value types plug in through `to_variable`, `payload` and `wrap`.
    """

    @classmethod
    def forward(cls, ctx: Context, *inputs: Any) -> Any:
        raise NotImplementedError(f"{cls.__name__}.forward is not implemented")

    @classmethod
    def backward(cls, ctx: Context, d_output: Any) -> Any:
        raise NotImplementedError(f"{cls.__name__}.backward is not implemented")

    @classmethod
    def to_variable(cls, value: Any) -> Any:
        return value

    @classmethod
    def payload(cls, variable: Any) -> Any:
        raise NotImplementedError

    @classmethod
    def wrap(cls, output: Any, history: Optional[History], inputs: Sequence[Any]) -> Any:
        raise NotImplementedError

    @classmethod
    def apply(cls, *values: Any, **params: Any) -> Any:
        """
        Runs the operation and records it in the graph.

        Args:
            *values: Input values. Raw numbers are converted through `to_variable`.
            **params: Non-differentiable arguments passed straight to `forward`, e.g. a dimension.

        Returns:
            The output value. It carries a `History` when any input requires grad and
            grad mode is enabled, otherwise it is a constant.
        """
        variables = [cls.to_variable(v) for v in values]
        need_grad = is_grad_enabled() and any(v.requires_grad for v in variables)
        ctx = Context(no_grad=not need_grad)
        payloads = [cls.payload(v) for v in variables]
        output = cls.forward(ctx, *payloads, **params)
        history = History(cls, ctx, variables) if need_grad else None
        return cls.wrap(output, history, payloads)

    @classmethod
    def chain_rule(
        cls, ctx: Context, inputs: Sequence[Any], d_output: Any
    ) -> list[tuple[Any, Any]]:
        """
        Calls `backward` and pairs each gradient with the input it belongs to.

        Args:
            ctx (Context): The context filled by the matching forward call.
            inputs (Sequence): The inputs recorded in the `History`.
            d_output: The upstream gradient.

        Returns:
            list[tuple]: `(input, gradient)` pairs, constants excluded.
        """
        grads = cls.backward(ctx, d_output)
        if not isinstance(grads, (tuple, list)):
            grads = (grads,)
        if len(grads) != len(inputs):
            raise GraphConsistencyError(
                f"{cls.__name__}.backward returned {len(grads)} gradients for {len(inputs)} inputs"
            )
        return [
            (inp, grad) for inp, grad in zip(inputs, grads) if not inp.is_constant()
        ]


def topological_sort(variable: Variable) -> list[Variable]:
    """
    Orders every non-constant value reachable from `variable` so that each consumer
    comes before the values it was computed from.

    Implemented as an iterative post-order depth first search, reversed. A value reached
    through several paths is listed once. Meeting a value that is still on the search
    stack means the graph has a cycle, which forward construction can never produce.

    Args:
        variable (Variable): The right-most value, usually a scalar loss.

    Returns:
        list[Variable]: Values in topological order, starting with `variable`.
    """
    if variable.is_constant():
        return []

    order = []
    done: set[int] = set()
    on_stack = {variable.unique_id}
    stack = [(variable, iter(variable.parents))]

    while stack:
        var, parents = stack[-1]
        for parent in parents:
            if parent.is_constant():
                continue
            uid = parent.unique_id
            if uid in on_stack:
                raise GraphConsistencyError(
                    f"Cycle detected in the computation graph at value {uid}"
                )
            if uid in done:
                continue
            on_stack.add(uid)
            stack.append((parent, iter(parent.parents)))
            break
        else:
            stack.pop()
            on_stack.discard(var.unique_id)
            done.add(var.unique_id)
            order.append(var)

    order.reverse()
    return order


def _has_nonfinite(value: Any) -> bool:
    if isinstance(value, (int, float)):
        return not math.isfinite(value)
    return not bool(np.all(np.isfinite(value.to_numpy())))


def backpropagate(variable: Variable, deriv: Any, retain_graph: bool = False) -> None:
    """
    Runs the chain rule backwards from `variable` and accumulates derivatives into the
    leaves of the graph.

    Pending gradients are kept in a mapping from `unique_id` to accumulator, created on
    the first contribution and summed afterwards. No averaging is performed.

    Args:
        variable (Variable): The right-most value.
        deriv: The seed derivative for `variable`, e.g. `1.0`.
        retain_graph (bool): Keep the saved values of every `Context` so the same graph
            can be backpropagated again.
    """
    order = topological_sort(variable)
    if not order:
        logger.debug("backpropagate called on a constant, nothing to do")
        return

    # consumer edges still to be processed, per value
    remaining = {var.unique_id: 0 for var in order}
    for var in order:
        for parent in var.parents:
            if parent.unique_id in remaining:
                remaining[parent.unique_id] += 1

    logger.debug("backpropagating through %d values", len(order))
    check_nonfinite = config.debug_nonfinite_grads()
    derivatives = {variable.unique_id: deriv}

    with no_grad():
        for var in order:
            uid = var.unique_id
            if remaining[uid] != 0 or uid not in derivatives:
                raise GraphConsistencyError(
                    f"Value {uid} reached before all of its consumers contributed a gradient"
                )
            d_var = derivatives.pop(uid)

            if var.is_leaf():
                var.accumulate_derivative(d_var)
                continue

            if var.retains_grad:
                var.accumulate_derivative(d_var)

            for parent, d_parent in var.chain_rule(d_var):
                if check_nonfinite and _has_nonfinite(d_parent):
                    raise ValueError(
                        f"Non-finite gradient produced by {var.history.last_fn.__name__} during backward()"
                    )
                puid = parent.unique_id
                if puid in derivatives:
                    derivatives[puid] = derivatives[puid] + d_parent
                else:
                    derivatives[puid] = d_parent
                remaining[puid] -= 1

            if not retain_graph:
                var.history.ctx.release()
