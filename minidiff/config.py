import os

# Kernel strategy: "python", "numpy" or "threaded"
BACKEND = os.getenv("MINIDIFF_BACKEND", "numpy").lower()

try:
    NUM_THREADS = int(os.getenv("MINIDIFF_NUM_THREADS", "") or (os.cpu_count() or 1))
except ValueError as e:
    raise ValueError(
        f"MINIDIFF_NUM_THREADS must be an integer, got {os.getenv('MINIDIFF_NUM_THREADS')!r}"
    ) from e


def debug_nonfinite_grads() -> bool:
    """
    Whether backpropagation should fail on NaN/inf gradient contributions.

    Read on every call so tests and notebooks can toggle it at runtime.
    """
    return os.getenv("MINIDIFF_DEBUG_NONFINITE_GRADS") not in (None, "", "0")
