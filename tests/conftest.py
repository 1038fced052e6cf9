import matplotlib
import pytest

from minidiff import use_backend

matplotlib.use("Agg")


@pytest.fixture(params=["python", "numpy", "threaded"])
def backend(request):
    """Runs the test once per kernel backend."""
    with use_backend(request.param) as b:
        yield b
