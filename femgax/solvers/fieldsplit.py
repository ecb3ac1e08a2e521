"""Hierarchical field-split preconditioner description and its interpretation.

A :class:`FieldSplitTree` is a tree of solver nodes. Leaves own a set of
field indices and a single-level preconditioner applied over the dofs of
those fields; internal nodes own child trees and combine them block by block
(``FIELDSPLIT``). Every node carries an outer scheme wrapped around its
preconditioner when a parent delegates a block to it.

Example:
    The Rayleigh-Benard split of velocity/pressure and temperature:

    >>> ns = FieldSplitTree.create_leaf("preonly", "asm", [0, 1, 2], label="Navier-Stokes")
    >>> ns.set_asm_block_size(4).set_asm_schur_variables(1)
    >>> t = FieldSplitTree.create_leaf("preonly", "asm", [3], label="Temperature")
    >>> root = FieldSplitTree.create_node("richardson", "fieldsplit", [ns, t], label="Benard")
    >>> root.validate(range(4))
    >>> M = root.build(A, dofmap)
"""
from typing import List, Optional, Sequence

import numpy as onp
import scipy.sparse
import scipy.sparse.linalg

from femgax.errors import FieldSplitError
from femgax.fem import logger
from femgax.solvers.krylov import krylov_solve
from femgax.solvers.linear_types import (CompositionKind, PreconditionerKind, SolverKind,
                                         _coerce_enum)
from femgax.solvers.preconditioners import make_preconditioner


class BlockLayout:
    """Dof layout of a field-blocked system without a mesh.

    Field ``f`` owns the contiguous range of size ``field_sizes[f]``; the
    "element" ``e`` groups the ``e``-th dof of every field, so Schwarz
    subdomains become point blocks.
    """

    def __init__(self, field_sizes, num_partitions=1):
        self.field_sizes = tuple(int(s) for s in field_sizes)
        self.field_offsets = onp.concatenate([[0], onp.cumsum(self.field_sizes)]).astype(onp.int64)
        self.num_dofs = int(self.field_offsets[-1])
        self.num_elements = max(self.field_sizes) if self.field_sizes else 0
        self.num_partitions = num_partitions

    @property
    def num_fields(self):
        return len(self.field_sizes)

    def field_dofs(self, fields):
        return onp.sort(onp.concatenate(
            [onp.arange(self.field_offsets[f], self.field_offsets[f + 1]) for f in fields]))

    def element_dofs(self, element, fields=None):
        if fields is None:
            fields = range(len(self.field_sizes))
        return onp.array([self.field_offsets[f] + element for f in fields
                          if element < self.field_sizes[f]], dtype=onp.int64)

    def owned_elements_by_partition(self):
        bounds = onp.linspace(0, self.num_elements, self.num_partitions + 1).astype(int)
        return [range(bounds[p], bounds[p + 1]) for p in range(self.num_partitions)]


class FieldSplitTree:
    """One node of a field-split solver tree.

    Use :meth:`create_leaf` and :meth:`create_node` rather than the constructor.

    Attributes:
        outer (SolverKind): Scheme applied around this node's preconditioner.
        preconditioner (PreconditionerKind): FIELDSPLIT for internal nodes.
        fields (tuple): Sorted field indices covered by the node.
        children (list): Child trees of an internal node, empty for leaves.
        solution_type_tags (tuple): Element types of a leaf's fields, in order.
        label (str): Name used in log messages.
        composition (CompositionKind): How an internal node combines blocks.
        asm_block_size (int): Elements per Schwarz subdomain.
        asm_schur_variables (int): Trailing fields eliminated per subdomain.
        max_iterations (int): Iterations of the outer scheme when delegated to.
    """

    def __init__(self, outer, preconditioner, fields, children, solution_type_tags, label):
        self.outer = _coerce_enum(SolverKind, outer, f"{label}.outer")
        self.preconditioner = _coerce_enum(PreconditionerKind, preconditioner, f"{label}.preconditioner")
        self.field_order = tuple(int(f) for f in fields)
        self.fields = tuple(sorted(self.field_order))
        self.children: List["FieldSplitTree"] = list(children)
        self.solution_type_tags = tuple(solution_type_tags) if solution_type_tags else ()
        self.label = label
        self.composition = CompositionKind.MULTIPLICATIVE
        self.asm_block_size = 1
        self.asm_schur_variables = 0
        self.max_iterations = 1
        self.rtol = 0.0

    @classmethod
    def create_leaf(cls, outer_solver_kind, preconditioner_kind, field_indices,
                    solution_type_tags: Optional[Sequence[str]] = None, label="leaf"):
        """Leaf applying ``preconditioner_kind`` over the dofs of ``field_indices``."""
        fields = [int(f) for f in field_indices]
        if not fields:
            raise FieldSplitError(f"Leaf {label!r} has no fields")
        if len(set(fields)) != len(fields):
            raise FieldSplitError(f"Leaf {label!r} repeats a field: {fields}")
        if solution_type_tags is not None and len(solution_type_tags) != len(fields):
            raise FieldSplitError(f"Leaf {label!r}: {len(solution_type_tags)} solution types "
                                  f"for {len(fields)} fields")
        leaf = cls(outer_solver_kind, preconditioner_kind, fields, [], solution_type_tags, label)
        if leaf.preconditioner == PreconditionerKind.FIELDSPLIT:
            raise FieldSplitError(f"Leaf {label!r} cannot use the fieldsplit preconditioner")
        return leaf

    @classmethod
    def create_node(cls, outer_solver_kind, preconditioner_kind, children, label="node"):
        """Internal node over pairwise disjoint children."""
        children = list(children)
        if not children:
            raise FieldSplitError(f"Node {label!r} has no children")
        seen = {}
        for child in children:
            for f in child.fields:
                if f in seen:
                    raise FieldSplitError(f"Node {label!r}: field {f} appears in both "
                                          f"{seen[f]!r} and {child.label!r}")
                seen[f] = child.label
        fields = [f for child in children for f in child.field_order]
        node = cls(outer_solver_kind, preconditioner_kind, fields, children, None, label)
        if node.preconditioner != PreconditionerKind.FIELDSPLIT:
            raise FieldSplitError(f"Node {label!r} must use the fieldsplit preconditioner")
        return node

    @property
    def is_leaf(self):
        return not self.children

    def set_asm_block_size(self, n):
        if int(n) < 1:
            raise FieldSplitError(f"{self.label!r}: ASM block size must be positive, got {n}")
        self.asm_block_size = int(n)
        return self

    def set_asm_schur_variables(self, n):
        if int(n) < 0:
            raise FieldSplitError(f"{self.label!r}: negative number of Schur variables")
        self.asm_schur_variables = int(n)
        return self

    def set_composition(self, composition):
        self.composition = _coerce_enum(CompositionKind, composition, f"{self.label}.composition")
        return self

    def set_tolerances(self, rtol=0.0, max_iterations=1):
        """Tolerance and cap of the outer scheme used when a parent delegates to this node."""
        self.rtol = float(rtol)
        self.max_iterations = int(max_iterations)
        return self

    def leaves(self):
        if self.is_leaf:
            yield self
            return
        for child in self.children:
            yield from child.leaves()

    def validate(self, all_fields):
        """Check that the tree covers exactly ``all_fields``."""
        expected = set(int(f) for f in all_fields)
        covered = set(self.fields)
        missing = sorted(expected - covered)
        extra = sorted(covered - expected)
        if missing or extra:
            raise FieldSplitError(f"Tree {self.label!r} does not cover the unknowns: "
                                  f"missing {missing}, unknown {extra}")

    def _check_tags(self, layout):
        ele_types = getattr(layout, "ele_types", None)
        if not self.solution_type_tags or ele_types is None:
            return
        actual = tuple(ele_types[f] for f in self.field_order)
        if actual != self.solution_type_tags:
            raise FieldSplitError(f"Leaf {self.label!r} expects solution types "
                                  f"{self.solution_type_tags}, layout has {actual}")

    def build_preconditioner(self, matrix, layout):
        """Preconditioner of this node over ``layout.field_dofs(self.fields)``.

        Args:
            matrix (scipy.sparse matrix): Full system matrix.
            layout (DofMap or BlockLayout): Dof layout of the system.

        Returns:
            scipy.sparse.linalg.LinearOperator: Acting on the node's dofs.
        """
        A = scipy.sparse.csr_array(matrix)
        dofs = layout.field_dofs(self.fields)
        A_node = A[dofs][:, dofs]
        if self.is_leaf:
            self._check_tags(layout)
            logger.debug(f"FieldSplit leaf {self.label!r}: {self.preconditioner.value} "
                         f"on fields {self.field_order} ({len(dofs)} dofs)")
            return make_preconditioner(self.preconditioner, A_node, layout=layout,
                                       fields=self.field_order, dofs=dofs,
                                       block_size=self.asm_block_size,
                                       schur_variables=self.asm_schur_variables)

        blocks = []
        for child in self.children:
            child_dofs = layout.field_dofs(child.fields)
            blocks.append((onp.searchsorted(dofs, child_dofs), child.build(A, layout)))
        composition = self.composition
        logger.debug(f"FieldSplit node {self.label!r}: {composition.value} over "
                     f"{[c.label for c in self.children]}")

        def apply(r):
            r = onp.ravel(r)
            z = onp.zeros(len(dofs))
            for local, block in blocks:
                if composition == CompositionKind.ADDITIVE:
                    z[local] = block @ r[local]
                else:
                    z[local] += block @ (r[local] - (A_node @ z)[local])
            return z

        return scipy.sparse.linalg.LinearOperator(A_node.shape, matvec=apply)

    def build(self, matrix, layout):
        """Operator applying this node's outer scheme around its preconditioner.

        For PREONLY this is the preconditioner itself; other schemes run up
        to ``max_iterations`` iterations from a zero guess.
        """
        M = self.build_preconditioner(matrix, layout)
        if self.outer == SolverKind.PREONLY:
            return M
        A = scipy.sparse.csr_array(matrix)
        dofs = layout.field_dofs(self.fields)
        A_node = A[dofs][:, dofs]
        outer, rtol, max_iterations = self.outer, self.rtol, self.max_iterations

        def apply(r):
            return krylov_solve(outer, A_node, onp.ravel(r), M, rtol=rtol,
                                max_iterations=max_iterations).x

        return scipy.sparse.linalg.LinearOperator(A_node.shape, matvec=apply)

    def solve(self, matrix, rhs, layout, x0=None, rtol=1e-10, atol=0.0, max_iterations=100):
        """Solve a system covered by the whole tree with its root scheme.

        Returns:
            LinearSolveResult: Result of the root's outer scheme.
        """
        self.validate(range(layout.num_fields))
        M = self.build_preconditioner(matrix, layout)
        return krylov_solve(self.outer, scipy.sparse.csr_array(matrix), rhs, M, x0=x0,
                            rtol=rtol, atol=atol, max_iterations=max_iterations)

