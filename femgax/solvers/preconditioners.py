"""Single-level preconditioners returned as SciPy linear operators.

Every factory takes a square sparse matrix and returns a
``scipy.sparse.linalg.LinearOperator`` approximating its inverse.
:class:`AdditiveSchwarz` is the restricted additive Schwarz method over
aggregates of consecutive elements, with an optional Schur-complement
elimination of trailing fields inside every subdomain.
"""
import numpy as onp
import scipy.linalg
import scipy.sparse
import scipy.sparse.linalg

from femgax.errors import ConfigurationError
from femgax.fem import logger
from femgax.solvers.linear_types import PreconditionerKind, _coerce_enum


def _as_csr(A):
    A = scipy.sparse.csr_array(A)
    if A.shape[0] != A.shape[1]:
        raise ConfigurationError(f"Preconditioner needs a square matrix, got shape {A.shape}")
    return A


def identity_operator(A):
    n = A.shape[0]
    return scipy.sparse.linalg.LinearOperator((n, n), matvec=lambda r: onp.array(r, dtype=onp.float64))


def jacobi(A):
    """Inverse of the diagonal; zero diagonal entries are left untouched."""
    diag = _as_csr(A).diagonal()
    inv = 1.0 / onp.where(diag != 0.0, diag, 1.0)
    n = len(diag)
    return scipy.sparse.linalg.LinearOperator((n, n), matvec=lambda r: inv * onp.ravel(r))


def ilu(A, drop_tol=1e-12, fill_factor=20):
    """Incomplete LU factorization from SuperLU."""
    A = _as_csr(A)
    factor = scipy.sparse.linalg.spilu(A.tocsc(), drop_tol=drop_tol, fill_factor=fill_factor)
    return scipy.sparse.linalg.LinearOperator(A.shape, matvec=lambda r: factor.solve(onp.ravel(r)))


def lu(A):
    """Exact sparse LU factorization from SuperLU."""
    A = _as_csr(A)
    factor = scipy.sparse.linalg.splu(A.tocsc())
    return scipy.sparse.linalg.LinearOperator(A.shape, matvec=lambda r: factor.solve(onp.ravel(r)))


class _SubdomainSolver:
    """Dense solve of one Schwarz subdomain.

    With ``num_schur > 0`` the subdomain matrix is split as
    ``[[A, B], [C, D]]`` with the Schur-variable dofs last; the velocity-like
    block ``A`` is factorized and the Schur complement ``S = D - C A^-1 B`` is
    pseudo-inverted, since it is singular whenever a subdomain leaves a
    constant pressure mode undetermined.
    """

    def __init__(self, A_sub, num_primary):
        self.num_primary = num_primary
        if num_primary == A_sub.shape[0]:
            self.factor = scipy.linalg.lu_factor(A_sub)
            self.schur_pinv = None
            return
        A = A_sub[:num_primary, :num_primary]
        self.B = A_sub[:num_primary, num_primary:]
        self.C = A_sub[num_primary:, :num_primary]
        D = A_sub[num_primary:, num_primary:]
        if num_primary == 0:
            self.factor = None
            self.schur_pinv = onp.linalg.pinv(D)
            return
        self.factor = scipy.linalg.lu_factor(A)
        self.schur_pinv = onp.linalg.pinv(D - self.C @ scipy.linalg.lu_solve(self.factor, self.B))

    def solve(self, r):
        if self.schur_pinv is None:
            return scipy.linalg.lu_solve(self.factor, r)
        n = self.num_primary
        if self.factor is None:
            return self.schur_pinv @ r
        y = scipy.linalg.lu_solve(self.factor, r[:n])
        x2 = self.schur_pinv @ (r[n:] - self.C @ y)
        x1 = y - scipy.linalg.lu_solve(self.factor, self.B @ x2)
        return onp.concatenate([x1, x2])


class AdditiveSchwarz:
    """Restricted additive Schwarz over aggregates of consecutive elements.

    Subdomains are formed from ``block_size`` consecutive elements owned by
    the same partition, so they never straddle a partition boundary. Each
    subdomain contains the dofs of ``fields`` on its elements; a dof shared by
    several subdomains takes its correction from the first one only.

    Args:
        A (scipy.sparse matrix): Operator restricted to ``dofs``.
        layout: Dof layout with ``element_dofs`` and ``owned_elements_by_partition``.
        fields (sequence): Field indices of the operator, in order.
        dofs (numpy.ndarray): Sorted system dofs the operator acts on.
        block_size (int): Elements per subdomain.
        schur_variables (int): Number of trailing fields eliminated by a
            Schur complement inside each subdomain.
    """

    def __init__(self, A, layout, fields, dofs, block_size=1, schur_variables=0):
        A = _as_csr(A)
        self.shape = A.shape
        fields = list(fields)
        num_schur = min(int(schur_variables), len(fields) - 1)
        primary_fields = fields[:len(fields) - num_schur]
        schur_fields = fields[len(fields) - num_schur:]
        dofs = onp.asarray(dofs, dtype=onp.int64)

        self.subdomains = []
        owned = onp.zeros(A.shape[0], dtype=bool)
        for elements in layout.owned_elements_by_partition():
            elements = list(elements)
            for start in range(0, len(elements), block_size):
                block = elements[start:start + block_size]
                primary = self._local(dofs, layout, block, primary_fields)
                schur = self._local(dofs, layout, block, schur_fields)
                local = onp.concatenate([primary, schur])
                if local.size == 0:
                    continue
                A_sub = A[local][:, local].toarray()
                keep = ~owned[local]
                owned[local] = True
                self.subdomains.append((local, keep, _SubdomainSolver(A_sub, len(primary))))
        if not onp.all(owned):
            raise ConfigurationError("Schwarz subdomains do not cover every dof of the operator")
        logger.debug(f"AdditiveSchwarz: {len(self.subdomains)} subdomains, block size {block_size}, "
                     f"{num_schur} Schur field(s)")

    @staticmethod
    def _local(dofs, layout, elements, fields):
        if not fields:
            return onp.zeros(0, dtype=onp.int64)
        global_dofs = onp.unique(onp.concatenate([layout.element_dofs(e, fields) for e in elements]))
        return onp.searchsorted(dofs, global_dofs)

    def apply(self, r):
        r = onp.ravel(r)
        z = onp.zeros(self.shape[0])
        for local, keep, solver in self.subdomains:
            correction = solver.solve(r[local])
            z[local[keep]] = correction[keep]
        return z

    def as_operator(self):
        return scipy.sparse.linalg.LinearOperator(self.shape, matvec=self.apply)


def make_preconditioner(kind, A, layout=None, fields=None, dofs=None, block_size=1,
                        schur_variables=0):
    """Build a single-level preconditioner by kind.

    Args:
        kind (PreconditionerKind or str): 'none', 'jacobi', 'ilu', 'lu' or 'asm'.
        A (scipy.sparse matrix): Square operator.
        layout, fields, dofs: Required by 'asm' only, see :class:`AdditiveSchwarz`.

    Returns:
        scipy.sparse.linalg.LinearOperator: Approximate inverse of ``A``.
    """
    kind = _coerce_enum(PreconditionerKind, kind, "preconditioner")
    if kind == PreconditionerKind.NONE:
        return identity_operator(A)
    if kind == PreconditionerKind.JACOBI:
        return jacobi(A)
    if kind == PreconditionerKind.ILU:
        return ilu(A)
    if kind == PreconditionerKind.LU:
        return lu(A)
    if kind == PreconditionerKind.ASM:
        if layout is None or fields is None:
            raise ConfigurationError("ASM preconditioning needs a dof layout and field list")
        if dofs is None:
            dofs = layout.field_dofs(fields)
        return AdditiveSchwarz(A, layout, fields, dofs, block_size, schur_variables).as_operator()
    raise ConfigurationError(f"{kind.value} is not a single-level preconditioner")
