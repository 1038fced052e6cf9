class MinidiffError(Exception):
    """
    `minidiff.errors.MinidiffError` is the root of every error raised by `minidiff`.
    """


class ShapeMismatchError(MinidiffError, ValueError):
    """
    Raised when tensor shapes are neither equal nor broadcast-compatible, or when a
    view (reshape, permute, expand, index) cannot be built for the requested shape.

    This is a caller-input error: fix the inputs and call again.
    """


class GraphConsistencyError(MinidiffError, RuntimeError):
    """
    Raised when the computation graph breaks an internal invariant, e.g. a cycle,
    a value processed before all of its consumers contributed, or a backward rule
    returning the wrong number of gradients.

    This is never recoverable; the training step should be aborted.
    """


class MissingContextError(MinidiffError, RuntimeError):
    """
    Raised when a backward rule reads saved values that its forward rule never stored,
    or that were released after a previous backward pass.
    """


class NoGradientError(MinidiffError, LookupError):
    """
    Raised when reading the derivative of a value that backpropagation never reached.

    Distinguishes "never computed" from "computed as zero".
    """
