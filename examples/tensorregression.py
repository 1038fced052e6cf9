# Fits y = Xw + b on noisy synthetic data with minidiff.Tensor parameters, matmul and broadcasting.
# Pass a backend name ("python", "numpy" or "threaded") as the first argument to pick the kernel strategy.

import sys

import numpy as np
from tqdm import tqdm

from minidiff import MSELoss, Module, SGD, from_numpy, matmul, rand, use_backend, zeros
from minidiff.tensorutils import LossPlotter


class LinearRegression(Module):
    def __init__(self, num_features, num_outputs, seed=None):
        super().__init__()
        self.add_parameter("weights", rand((num_features, num_outputs), seed=seed))
        self.add_parameter("bias", zeros((1, num_outputs)))
        self.add_data("num_features", num_features)

    def forward(self, X):
        return matmul(X, self.weights.value) + self.bias.value


if __name__ == "__main__":
    backend = sys.argv[1] if len(sys.argv) > 1 else "numpy"
    rng = np.random.default_rng(42)

    true_w = np.array([[2.0], [-3.0], [0.5]])
    X_np = rng.uniform(-1, 1, size=(64, 3))
    y_np = X_np @ true_w + 1.5 + rng.normal(scale=0.05, size=(64, 1))
    X = from_numpy(X_np, requires_grad=False)
    y = from_numpy(y_np, requires_grad=False)

    model = LinearRegression(3, 1, seed=0)
    loss_fn = MSELoss()
    optim = SGD(model.parameters(), lr=0.1, momentum=0.9)
    loss_plot = LossPlotter()

    with use_backend(backend):
        for _ in tqdm(range(200), desc=f"Training {type(model).__name__} ({backend})"):
            model.zero_grad()
            loss = loss_fn(model(X), y)
            loss.backward()
            optim.step()
            loss_plot.register_datapoint(loss, f"{type(model).__name__}-minidiff")

    print("weights", model.weights.value.tolist())
    print("bias", model.bias.value.tolist())
    loss_plot.plot()
