"""
Simplex-constrained solvers for conflict-averse aggregation.

Both solvers minimize the conflict-averse objective

    f(w) = <w, A b> + c * sqrt(w^T A w + eps),   w in the probability simplex

where A is the [N, N] Gram matrix of client deltas and b is the uniform vector.
The projected gradient solver is the default; the SLSQP solver follows the
FedHCA2 formulation through scipy.

Credits for the objective go to:
Lu, Y., Huang, S., Yang, Y., Sirejiding, S., Ding, Y., & Lu, H. (2024).
FedHCA2: Towards Hetero-Client Federated Multi-Task Learning. CVPR 2024.
"""

import logging

import numpy as np
from scipy.optimize import minimize

from fedmtl.weight_map import EPS

logger = logging.getLogger(__name__)


def project_to_simplex(v: np.ndarray) -> np.ndarray:
    """
    Euclidean projection of ``v`` onto {w : w >= 0, sum(w) = 1}.

    Sort-and-threshold algorithm, O(n log n).

    Args:
        v: 1D array of any real values

    Returns:
        Nearest point of the probability simplex
    """
    v = np.asarray(v, dtype=np.float64).ravel()
    n = v.shape[0]
    if n == 0:
        return v.copy()

    u = np.sort(v)[::-1]
    cssv = np.cumsum(u)
    ind = np.arange(1, n + 1)
    cond = u - (cssv - 1.0) / ind > 0
    rho = ind[cond][-1]
    theta = (cssv[rho - 1] - 1.0) / rho
    return np.maximum(v - theta, 0.0)


def _objective(A: np.ndarray, Ab: np.ndarray, c: float, x: np.ndarray) -> float:
    return float(x.dot(Ab) + c * np.sqrt(x.dot(A).dot(x) + EPS))


def _gradient(A: np.ndarray, Ab: np.ndarray, c: float, x: np.ndarray) -> np.ndarray:
    Ax = A.dot(x)
    return Ab + c * Ax / np.sqrt(x.dot(Ax) + EPS)


def solve_simplex_projected_gd(
    A: np.ndarray,
    c: float,
    max_iters: int = 500,
    tol: float = 1e-9
) -> np.ndarray:
    """
    Projected gradient descent on the simplex.

    The step starts at 0.1, is halved whenever a step does not improve the
    objective and grows by 5% (capped at 1.0) on acceptance. Stops when the L1
    change of an accepted step drops below ``tol``, when the step underflows,
    or after ``max_iters`` iterations.

    Args:
        A: [N, N] symmetric PSD matrix
        c: Conflict-averse penalty coefficient
        max_iters: Maximum number of iterations
        tol: L1 convergence tolerance

    Returns:
        Simplex weights of length N
    """
    A = np.asarray(A, dtype=np.float64)
    n = A.shape[0]
    b = np.full(n, 1.0 / n)
    Ab = A.dot(b)

    x = b.copy()
    fx = _objective(A, Ab, c, x)
    step = 0.1

    for _ in range(max_iters):
        g = _gradient(A, Ab, c, x)
        x_new = project_to_simplex(x - step * g)
        f_new = _objective(A, Ab, c, x_new)

        if f_new > fx + 1e-12:
            step *= 0.5
            if step < 1e-12:
                break
            continue

        diff = np.abs(x_new - x).sum()
        x, fx = x_new, f_new
        step = min(step * 1.05, 1.0)
        if diff < tol:
            break

    return x


def solve_simplex_slsqp(A: np.ndarray, c: float) -> np.ndarray:
    """
    Solve the same objective with scipy's constrained minimizer.

    Falls back to uniform weights if the optimizer reports failure.
    """
    A = np.asarray(A, dtype=np.float64)
    n = A.shape[0]
    x_start = np.ones(n) / n
    b = x_start.copy()
    Ab = A.dot(b)
    bnds = tuple((0, 1) for _ in x_start)
    cons = {"type": "eq", "fun": lambda x: 1 - sum(x)}

    res = minimize(lambda x: _objective(A, Ab, c, x), x_start, bounds=bnds, constraints=cons)

    if not res.success:
        logger.warning("SLSQP optimization failed (%s), falling back to uniform weights", res.message)
        return x_start

    # SLSQP can leave tiny bound violations
    return project_to_simplex(res.x)
