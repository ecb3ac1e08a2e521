"""
Bounded-iteration outer linear solvers (PREONLY, RICHARDSON, GMRES, BICGSTAB).

All solvers return a :class:`LinearSolveResult` and never raise on
non-convergence: the best iterate found within ``max_iterations`` is returned
with ``converged=False``. They are used as multigrid smoothers and as the
outer schemes of field-split blocks.
"""
import numpy as onp
import scipy.sparse.linalg

from femgax.fem import logger
from femgax.solvers.linear_types import LinearSolveResult, SolverKind, _coerce_enum


def _residual_norm(A, b, x):
    return float(onp.linalg.norm(b - A @ x))


def krylov_solve(kind, A, b, M=None, x0=None, rtol=1e-8, atol=0.0, max_iterations=100,
                 restart=30):
    """Solve ``A x = b`` with a preconditioned outer scheme.

    Args:
        kind (SolverKind or str): Outer scheme.
        A (scipy.sparse matrix or LinearOperator): System operator.
        b (numpy.ndarray): Right-hand side.
        M (LinearOperator, optional): Preconditioner, identity when None.
        x0 (numpy.ndarray, optional): Initial guess, zero when None.
        rtol, atol (float): Stop when ``|b - A x| <= max(atol, rtol |b|)``.
        max_iterations (int): Iteration cap; PREONLY always does one application.

    Returns:
        LinearSolveResult: The best iterate and its residual.
    """
    kind = _coerce_enum(SolverKind, kind, "solver")
    b = onp.asarray(b, dtype=onp.float64)
    n = b.shape[0]
    x = onp.zeros(n) if x0 is None else onp.array(x0, dtype=onp.float64)
    if M is None:
        M = scipy.sparse.linalg.aslinearoperator(scipy.sparse.eye_array(n))
    b_norm = float(onp.linalg.norm(b))
    threshold = max(atol, rtol * b_norm)
    r0_norm = _residual_norm(A, b, x)
    n_iter = 0

    if kind == SolverKind.PREONLY:
        x = x + M @ (b - A @ x)
        n_iter = 1
    elif kind == SolverKind.RICHARDSON:
        best_x, best_norm = x.copy(), r0_norm
        res_norm = r0_norm
        while n_iter < max_iterations and res_norm > threshold:
            x = x + M @ (b - A @ x)
            n_iter += 1
            res_norm = _residual_norm(A, b, x)
            if not onp.isfinite(res_norm):
                break
            if res_norm < best_norm:
                best_x, best_norm = x.copy(), res_norm
        x = best_x
    else:
        count = [0]

        def callback(_):
            count[0] += 1

        if kind == SolverKind.GMRES:
            restart = max(1, min(restart, max_iterations))
            x_new, _ = scipy.sparse.linalg.gmres(
                A, b, x0=x, rtol=rtol, atol=atol, restart=restart,
                maxiter=max(1, -(-max_iterations // restart)), M=M,
                callback=callback, callback_type="pr_norm")
        else:
            x_new, _ = scipy.sparse.linalg.bicgstab(
                A, b, x0=x, rtol=rtol, atol=atol, maxiter=max_iterations, M=M, callback=callback)
        n_iter = count[0]
        new_norm = _residual_norm(A, b, x_new)
        if onp.isfinite(new_norm) and new_norm <= r0_norm:
            x = x_new

    res_norm = _residual_norm(A, b, x)
    converged = bool(res_norm <= threshold)
    rel = res_norm / (b_norm + 1e-30)
    logger.debug(f"{kind.value}: {n_iter} iterations, residual = {res_norm:.3e}, rel = {rel:.3e}")
    return LinearSolveResult(
        x=x,
        converged=converged,
        n_iter=n_iter,
        residual_norm=res_norm,
        rel_residual=rel,
        method=kind.value,
        message=None if converged else "iteration limit reached",
    )
