from __future__ import annotations

import logging
from typing import Iterable

import numpy as np

from minidiff.module import Parameter
from minidiff.node import Node

logger = logging.getLogger(__name__)


def _grad_array(param: Parameter) -> np.ndarray | None:
    if not param.has_derivative:
        return None
    d = param.derivative
    if isinstance(param.value, Node):
        return np.asarray(d, dtype=np.float64)
    return d.to_numpy()


def _value_array(param: Parameter) -> np.ndarray:
    if isinstance(param.value, Node):
        return np.asarray(param.value.value, dtype=np.float64)
    return param.value.to_numpy()


class Optim:
    """
    `minidiff.optim.Optim` is the base class of optimisers over `Parameter` lists.

    Attributes
    ----------
    parameters (list[Parameter]): The parameters updated by `step`.
    lr (float): Learning rate.
    maximise (bool): Ascend the gradient instead of descending it.
    weight_decay (float): L2 penalty added to each gradient.
    grad_clip_norm (Optional[float]): Rescale each gradient whose L2 norm exceeds this value.
    grad_clip_value (Optional[float]): Clamp each gradient element into `[-grad_clip_value, grad_clip_value]`.
    """

    def __init__(
        self,
        parameters: Iterable[Parameter],
        lr: float = 1e-3,
        maximise: bool = False,
        weight_decay: float = 0.0,
        grad_clip_norm: float | None = None,
        grad_clip_value: float | None = None,
    ) -> None:
        self.parameters = list(parameters)
        self.lr = lr
        self.maximise = maximise
        self.weight_decay = weight_decay
        self.grad_clip_norm = grad_clip_norm
        self.grad_clip_value = grad_clip_value

    def _apply_clipping(self, g: np.ndarray) -> np.ndarray:
        # Clip by L2 norm if configured
        if self.grad_clip_norm is not None:
            norm = float(np.sqrt(np.sum(g * g)))
            if norm > self.grad_clip_norm:
                g = g * (self.grad_clip_norm / norm)
        # Elementwise clamp if configured
        if self.grad_clip_value is not None:
            c = self.grad_clip_value
            g = np.clip(g, -c, c)
        return g

    def zero_grad(self) -> None:
        for param in self.parameters:
            param.zero_grad()

    def step(self) -> None:
        raise NotImplementedError


class SGD(Optim):
    """
    Stochastic gradient descent with optional (Nesterov) momentum.

    Parameters that have not received a gradient since they were created or last updated
    are left untouched.
    """

    def __init__(
        self,
        parameters: Iterable[Parameter],
        lr: float = 1e-3,
        maximise: bool = False,
        weight_decay: float = 0.0,
        momentum: float = 0.0,
        dampening: float = 0.0,
        nesterov: bool = False,
        grad_clip_norm: float | None = None,
        grad_clip_value: float | None = None,
    ) -> None:
        super().__init__(parameters, lr, maximise, weight_decay, grad_clip_norm, grad_clip_value)
        if nesterov and (momentum <= 0 or dampening != 0):
            raise ValueError("Nesterov momentum requires a positive momentum and zero dampening")
        self.momentum = momentum
        self.dampening = dampening
        self.nesterov = nesterov
        self.t = 0
        self.b_t: dict[Parameter, np.ndarray] = {}

    def step(self) -> None:
        self.t += 1
        skipped = 0
        for param in self.parameters:
            g_t = _grad_array(param)
            if g_t is None:
                skipped += 1
                continue

            p_vals = _value_array(param)

            if self.weight_decay != 0.0:
                g_t = g_t + self.weight_decay * p_vals

            if self.momentum != 0:
                if param in self.b_t:
                    self.b_t[param] = self.momentum * self.b_t[param] + (1 - self.dampening) * g_t
                else:
                    self.b_t[param] = g_t.copy()

                if self.nesterov:
                    g_t = g_t + self.momentum * self.b_t[param]
                else:
                    g_t = self.b_t[param]

            g_t = self._apply_clipping(g_t)

            if self.maximise:
                param.update(p_vals + self.lr * g_t)
            else:
                param.update(p_vals - self.lr * g_t)
        if skipped:
            logger.debug("SGD step %d skipped %d parameters without gradients", self.t, skipped)
