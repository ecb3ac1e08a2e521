"""PETSc-backed global vectors and matrices.

Drop-in replacements for :mod:`femgax.fem.system` built on petsc4py. PETSc's
``assemble()`` plays the role of the collective close; contributions from all
partitions are inserted with ``ADD_VALUES``. Requires the ``petsc`` extra.
"""
import numpy as onp
import scipy.sparse
from petsc4py import PETSc

from femgax.fem import logger
from femgax.fem.system import _CLOSED, _PartitionedObject


class PetscVector(_PartitionedObject):
    """Residual vector stored in a sequential ``PETSc.Vec``."""

    def __init__(self, size, num_partitions=1):
        super().__init__(size, num_partitions)
        self.vec = PETSc.Vec().createSeq(self.size)

    def zero(self):
        super().zero()
        self.vec.zeroEntries()

    def add_blocked(self, values, indices, partition=0):
        self._require_open(partition)
        self.vec.setValues(onp.asarray(indices, dtype=PETSc.IntType),
                           onp.asarray(values, dtype=onp.float64),
                           addv=PETSc.InsertMode.ADD_VALUES)

    def close(self):
        self._begin_close()
        self.vec.assemble()
        self._state = _CLOSED

    @property
    def array(self):
        self._require_closed()
        return self.vec.getArray()

    def set_values(self, indices, values):
        self._require_closed()
        indices = onp.asarray(indices, dtype=PETSc.IntType)
        self.vec.setValues(indices, onp.broadcast_to(values, indices.shape).astype(onp.float64))
        self.vec.assemble()

    def norm(self):
        self._require_closed()
        return float(self.vec.norm())


class PetscMatrix(_PartitionedObject):
    """Jacobian stored in a sequential AIJ ``PETSc.Mat``."""

    def __init__(self, size, num_partitions=1):
        super().__init__(size, num_partitions)
        self.mat = PETSc.Mat().createAIJ([self.size, self.size])
        self.mat.setOption(PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR, False)
        self.mat.setUp()

    def zero(self):
        super().zero()
        self.mat.zeroEntries()

    def add_blocked(self, values, rows, cols=None, partition=0):
        self._require_open(partition)
        rows = onp.asarray(rows, dtype=PETSc.IntType)
        cols = rows if cols is None else onp.asarray(cols, dtype=PETSc.IntType)
        self.mat.setValues(rows, cols, onp.asarray(values, dtype=onp.float64).reshape(-1),
                           addv=PETSc.InsertMode.ADD_VALUES)

    def close(self):
        self._begin_close()
        self.mat.assemble()
        self._state = _CLOSED

    @property
    def matrix(self):
        """The assembled matrix converted to ``scipy.sparse.csr_array``."""
        self._require_closed()
        indptr, indices, data = self.mat.getValuesCSR()
        return scipy.sparse.csr_array((data, indices, indptr), shape=self.mat.getSize())

    def zero_rows(self, rows, diag=1.0):
        self._require_closed()
        self.mat.zeroRows(onp.asarray(rows, dtype=PETSc.IntType), diag=diag)

    def norm(self):
        self._require_closed()
        return float(self.mat.norm())


def petsc_solve(A, b, ksp_type="gmres", pc_type="ilu", rtol=1e-10, max_it=1000):
    """Solve ``A x = b`` with a PETSc KSP.

    Args:
        A (scipy.sparse.csr_array or PETSc.Mat): System matrix.
        b (numpy.ndarray): Right-hand side.
        ksp_type (str): Krylov method, e.g. 'gmres', 'bcgs', 'preonly'.
        pc_type (str): Preconditioner, e.g. 'ilu', 'jacobi', 'lu'.

    Returns:
        tuple: ``(x, converged, iterations)``.
    """
    if not isinstance(A, PETSc.Mat):
        A = scipy.sparse.csr_array(A)
        A = PETSc.Mat().createAIJ(
            size=A.shape,
            csr=(A.indptr.astype(PETSc.IntType, copy=False),
                 A.indices.astype(PETSc.IntType, copy=False),
                 A.data))
    n = A.getSize()[0]
    rhs = PETSc.Vec().createSeq(n)
    rhs.setValues(range(n), onp.asarray(b, dtype=onp.float64))
    rhs.assemble()
    x = PETSc.Vec().createSeq(n)
    ksp = PETSc.KSP().create()
    ksp.setOperators(A)
    ksp.setType(ksp_type)
    ksp.pc.setType(pc_type)
    ksp.setTolerances(rtol=rtol, max_it=max_it)
    logger.debug(f"PETSc Solver - ksp_type = {ksp.getType()}, pc = {ksp.pc.getType()}")
    ksp.solve(rhs, x)
    converged = ksp.getConvergedReason() > 0
    iterations = ksp.getIterationNumber()
    solution = x.getArray().copy()
    rhs.destroy()
    x.destroy()
    ksp.destroy()
    return solution, converged, iterations
