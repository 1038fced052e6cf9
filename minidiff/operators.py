from __future__ import annotations

import math
from typing import Callable, NamedTuple

import numpy as np

# Scalar math shared by `minidiff.node` and the tensor kernels.


def id_(x: float) -> float:
    return x


def mul(x: float, y: float) -> float:
    return x * y


def add(x: float, y: float) -> float:
    return x + y


def sub(x: float, y: float) -> float:
    return x - y


def neg(x: float) -> float:
    return -x


def div(x: float, y: float) -> float:
    """IEEE division: a zero divisor gives a signed infinity, or `nan` for `0 / 0`."""
    try:
        return x / y
    except ZeroDivisionError:
        if x == 0 or math.isnan(x):
            return math.nan
        return math.copysign(math.inf, x) * math.copysign(1.0, y)


def inv(x: float) -> float:
    return div(1.0, x)


def lt(x: float, y: float) -> float:
    return 1.0 if x < y else 0.0


def eq(x: float, y: float) -> float:
    return 1.0 if x == y else 0.0


def max_(x: float, y: float) -> float:
    return x if x > y else y


def is_close(x: float, y: float) -> float:
    return 1.0 if abs(x - y) < 1e-2 else 0.0


def pow_(x: float, y: float) -> float:
    """
    Real power with `numpy.power` semantics.

    A negative base with a finite non-integer exponent has no real result and gives
    `nan`. Zero raised to a negative power and overflows give infinities.
    """
    if x < 0 and math.isfinite(y) and not float(y).is_integer():
        return math.nan
    odd = math.isfinite(y) and float(y).is_integer() and int(y) % 2 == 1
    try:
        return x**y
    except ZeroDivisionError:
        return -math.inf if odd and math.copysign(1.0, x) < 0 else math.inf
    except OverflowError:
        return -math.inf if odd and x < 0 else math.inf


def sigmoid(x: float) -> float:
    """
    Numerically stable logistic sigmoid.

    Uses `1 / (1 + e^-x)` for non-negative inputs and `e^x / (1 + e^x)` otherwise
    so that neither branch overflows.
    """
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def relu(x: float) -> float:
    return x if x > 0 else 0.0


def log(x: float) -> float:
    if x == 0:
        return -math.inf
    if x < 0:
        return math.nan
    return math.log(x)


def exp(x: float) -> float:
    try:
        return math.exp(x)
    except OverflowError:
        return math.inf


def tanh(x: float) -> float:
    return math.tanh(x)


def sin(x: float) -> float:
    return math.sin(x)


def cos(x: float) -> float:
    return math.cos(x)


def log_back(x: float, d: float) -> float:
    return div(d, x)


def inv_back(x: float, d: float) -> float:
    return div(-d, x * x)


def relu_back(x: float, d: float) -> float:
    return d if x > 0 else 0.0


def tanh_back(y: float, d: float) -> float:
    # y is the forward output
    return d * (1.0 - y * y)


def sigmoid_back(y: float, d: float) -> float:
    return d * y * (1.0 - y)


def _np_sigmoid(x):
    return np.exp(-np.logaddexp(0.0, -x))


def _np_relu(x):
    return np.where(x > 0, x, 0.0)


def _np_lt(x, y):
    return np.less(x, y).astype(np.float64)


def _np_eq(x, y):
    return np.equal(x, y).astype(np.float64)


def _np_is_close(x, y):
    return (np.abs(x - y) < 1e-2).astype(np.float64)


def _np_log_back(x, d):
    return d / x


def _np_inv_back(x, d):
    return -d / (x * x)


def _np_relu_back(x, d):
    return np.where(x > 0, d, 0.0)


def _np_tanh_back(y, d):
    return d * (1.0 - y * y)


def _np_sigmoid_back(y, d):
    return d * y * (1.0 - y)


class Kernel(NamedTuple):
    """
    `minidiff.operators.Kernel` pairs an elementwise scalar function with its vectorised
    numpy equivalent. Backends pick whichever suits their execution strategy.

    Attributes
    ----------
    name (str): Name used in logs and error messages.
    scalar (Callable): Function over python floats.
    vector (Callable): Function over numpy arrays, broadcasting like the scalar version.
    """

    name: str
    scalar: Callable
    vector: Callable


ID = Kernel("id", id_, np.positive)
NEG = Kernel("neg", neg, np.negative)
INV = Kernel("inv", inv, np.reciprocal)
EXP = Kernel("exp", exp, np.exp)
LOG = Kernel("log", log, np.log)
TANH = Kernel("tanh", tanh, np.tanh)
SIGMOID = Kernel("sigmoid", sigmoid, _np_sigmoid)
RELU = Kernel("relu", relu, _np_relu)

ADD = Kernel("add", add, np.add)
SUB = Kernel("sub", sub, np.subtract)
MUL = Kernel("mul", mul, np.multiply)
DIV = Kernel("div", div, np.divide)
POW = Kernel("pow", pow_, np.power)
MAX = Kernel("max", max_, np.maximum)
LT = Kernel("lt", lt, _np_lt)
EQ = Kernel("eq", eq, _np_eq)
IS_CLOSE = Kernel("is_close", is_close, _np_is_close)
LOG_BACK = Kernel("log_back", log_back, _np_log_back)
INV_BACK = Kernel("inv_back", inv_back, _np_inv_back)
RELU_BACK = Kernel("relu_back", relu_back, _np_relu_back)
TANH_BACK = Kernel("tanh_back", tanh_back, _np_tanh_back)
SIGMOID_BACK = Kernel("sigmoid_back", sigmoid_back, _np_sigmoid_back)
