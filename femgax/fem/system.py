"""Partition-aware sparse residual vectors and matrices.

These objects implement the zero / add_blocked / close / norm protocol of the
global system. Each partition scatters into its own stash; :meth:`close` is the
collective step that reconciles every stash into the global object. A vector
or matrix must be closed exactly once per assembly pass before it is used.
"""
import numpy as onp
import scipy.sparse
import scipy.sparse.linalg

from femgax.errors import AssemblyStateError
from femgax.fem import logger

_NEW, _OPEN, _CLOSED = "new", "open", "closed"


class _PartitionedObject:
    def __init__(self, size, num_partitions=1):
        self.size = int(size)
        self.num_partitions = int(num_partitions)
        self._state = _NEW
        self._stash = None

    @property
    def closed(self):
        return self._state == _CLOSED

    def zero(self):
        """Start a new assembly pass with empty partition stashes."""
        self._stash = [[] for _ in range(self.num_partitions)]
        self._state = _OPEN

    def _require_open(self, partition):
        if self._state != _OPEN:
            raise AssemblyStateError(f"add_blocked called on a {self._state} object; call zero() first")
        if not 0 <= partition < self.num_partitions:
            raise AssemblyStateError(f"Partition {partition} out of range [0, {self.num_partitions})")

    def _begin_close(self):
        if self._state != _OPEN:
            raise AssemblyStateError(f"close() called on a {self._state} object; it must follow zero() exactly once")

    def _require_closed(self):
        if self._state != _CLOSED:
            raise AssemblyStateError("The object must be closed before it is consumed")


class SparseVector(_PartitionedObject):
    """Global residual vector assembled from per-partition contributions."""

    def __init__(self, size, num_partitions=1):
        super().__init__(size, num_partitions)
        self._array = None

    def add_blocked(self, values, indices, partition=0):
        self._require_open(partition)
        self._stash[partition].append((onp.asarray(indices, dtype=onp.int64),
                                       onp.asarray(values, dtype=onp.float64)))

    def close(self):
        self._begin_close()
        array = onp.zeros(self.size)
        for stash in self._stash:
            for indices, values in stash:
                onp.add.at(array, indices, values)
        self._array = array
        self._stash = None
        self._state = _CLOSED

    @property
    def array(self):
        self._require_closed()
        return self._array

    def set_values(self, indices, values):
        """Overwrite entries of a closed vector, e.g. constrained rows."""
        self._require_closed()
        self._array[onp.asarray(indices, dtype=onp.int64)] = values

    def norm(self):
        return float(onp.linalg.norm(self.array))


class SparseMatrix(_PartitionedObject):
    """Global CSR matrix assembled from per-partition dense element blocks."""

    def __init__(self, size, num_partitions=1):
        super().__init__(size, num_partitions)
        self._matrix = None

    def add_blocked(self, values, rows, cols=None, partition=0):
        self._require_open(partition)
        rows = onp.asarray(rows, dtype=onp.int64)
        cols = rows if cols is None else onp.asarray(cols, dtype=onp.int64)
        values = onp.asarray(values, dtype=onp.float64).reshape(len(rows), len(cols))
        self._stash[partition].append((rows, cols, values))

    def close(self):
        self._begin_close()
        I, J, V = [], [], []
        for stash in self._stash:
            for rows, cols, values in stash:
                I.append(onp.repeat(rows, len(cols)))
                J.append(onp.tile(cols, len(rows)))
                V.append(values.reshape(-1))
        if I:
            I, J, V = onp.concatenate(I), onp.concatenate(J), onp.concatenate(V)
        else:
            I = J = onp.zeros(0, dtype=onp.int64)
            V = onp.zeros(0)
        self._matrix = scipy.sparse.csr_array((V, (I, J)), shape=(self.size, self.size))
        self._matrix.sum_duplicates()
        logger.debug(f"SparseMatrix closed with nnz = {self._matrix.nnz}")
        self._stash = None
        self._state = _CLOSED

    @property
    def matrix(self):
        """The assembled ``scipy.sparse.csr_array``."""
        self._require_closed()
        return self._matrix

    def zero_rows(self, rows, diag=1.0):
        """Zero rows of a closed matrix and put ``diag`` on their diagonal."""
        self._require_closed()
        keep = onp.ones(self.size)
        keep[onp.asarray(rows, dtype=onp.int64)] = 0.0
        self._matrix = (scipy.sparse.diags_array(keep) @ self._matrix
                        + scipy.sparse.diags_array(diag * (1.0 - keep))).tocsr()

    def norm(self):
        return float(scipy.sparse.linalg.norm(self.matrix))
