"""Fit y = exp(a*x^2 + b*x + c) to noisy samples by nonlinear least squares."""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class FitResult:
    """Outcome of a fit: parameters, final cost and number of iterations run."""

    params: np.ndarray
    cost: float
    iterations: int


def curve(params, x):
    """Evaluate exp(a*x^2 + b*x + c)."""
    a, b, c = params
    x = np.asarray(x, dtype=float)
    return np.exp(a * x * x + b * x + c)


def generate_data(a=1.0, b=2.0, c=1.0, n=100, sigma=1.0, seed=0):
    """Sample the curve at x = i/100 with Gaussian noise of deviation sigma**2."""
    if n < 0:
        raise ValueError("n must not be negative")
    rng = np.random.default_rng(seed)
    x = np.arange(n) / 100.0
    noise = rng.normal(0.0, sigma * sigma, size=n) if sigma else np.zeros(n)
    return x, curve((a, b, c), x) + noise


def _prepare(x, y, initial, sigma):
    if sigma <= 0:
        raise ValueError("sigma must be positive")
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.shape != y.shape or x.ndim != 1:
        raise ValueError("x and y must be 1-D arrays of the same length")
    params = np.array(initial, dtype=float).reshape(-1)
    if params.size != 3:
        raise ValueError("initial must hold three parameters")
    return x, y, params, 1.0 / (sigma * sigma)


def _residuals_and_jacobian(params, x, y):
    f = curve(params, x)
    residuals = y - f
    jacobian = np.column_stack([-x * x * f, -x * f, -f])
    return residuals, jacobian


def _cost(params, x, y):
    r = y - curve(params, x)
    return float(r @ r)


def gauss_newton(x, y, initial=(2.0, -1.0, 5.0), iterations=100, sigma=1.0):
    """Gauss-Newton iteration; stops when the cost no longer decreases."""
    x, y, params, weight = _prepare(x, y, initial, sigma)
    last_cost = 0.0
    done = 0
    with np.errstate(over="ignore", invalid="ignore"):
        for it in range(iterations):
            r, j = _residuals_and_jacobian(params, x, y)
            h = weight * (j.T @ j)
            b = -weight * (j.T @ r)
            cost = float(r @ r)
            try:
                dx = np.linalg.solve(h, b)
            except np.linalg.LinAlgError:
                break
            if np.isnan(dx[0]):
                break
            if it > 0 and cost >= last_cost:
                break
            params = params + dx
            last_cost = cost
            done += 1
        return FitResult(params, _cost(params, x, y), done)


def levenberg_marquardt(x, y, initial=(2.0, -1.0, 5.0), iterations=50, sigma=1.0):
    """Levenberg-Marquardt with a gain-ratio controlled damping factor."""
    x, y, params, weight = _prepare(x, y, initial, sigma)
    with np.errstate(over="ignore", invalid="ignore"):
        r, j = _residuals_and_jacobian(params, x, y)
        cost = weight * float(r @ r)
        h = weight * (j.T @ j)
        g = -weight * (j.T @ r)
        lam = 1e-3 * max(float(np.max(np.diag(h))), 1.0)
        nu = 2.0
        done = 0
        for _ in range(iterations):
            done += 1
            d = np.diag(np.maximum(np.diag(h), 1e-12))
            try:
                dx = np.linalg.solve(h + lam * d, g)
            except np.linalg.LinAlgError:
                lam *= nu
                nu *= 2.0
                continue
            if not np.all(np.isfinite(dx)):
                break
            candidate = params + dx
            r_new, j_new = _residuals_and_jacobian(candidate, x, y)
            new_cost = weight * float(r_new @ r_new)
            predicted = float(dx @ (lam * (d @ dx) + g))
            gain = (cost - new_cost) / predicted if predicted > 0 and np.isfinite(new_cost) else -1.0
            if gain > 0:
                decrease = cost - new_cost
                params, cost = candidate, new_cost
                h = weight * (j_new.T @ j_new)
                g = -weight * (j_new.T @ r_new)
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * gain - 1.0) ** 3)
                nu = 2.0
                if decrease <= 1e-15 * max(cost, 1e-300) or np.linalg.norm(dx) < 1e-12:
                    break
            else:
                lam *= nu
                nu *= 2.0
        return FitResult(params, _cost(params, x, y), done)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Fit an exponential curve to simulated data.")
    parser.add_argument(
        "--method", choices=("gauss-newton", "levenberg-marquardt"), default="gauss-newton"
    )
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--iterations", type=int, default=None)
    args = parser.parse_args(argv)

    x, y = generate_data(1.0, 2.0, 1.0, 100, 1.0, args.seed)
    fit = gauss_newton if args.method == "gauss-newton" else levenberg_marquardt
    kwargs = {} if args.iterations is None else {"iterations": args.iterations}
    start = time.perf_counter()
    result = fit(x, y, (2.0, -1.0, 5.0), **kwargs)
    elapsed = time.perf_counter() - start
    print(f"solve time cost = {elapsed} seconds. ")
    a, b, c = result.params
    print(f"estimated abc = {a}, {b}, {c}")
    return 0