"""Element and global assembly of residuals and Jacobians.

:class:`LocalAssembler` evaluates an injected :class:`WeakForm` on one element
through a jitted kernel. When a differentiation tape is supplied the residual
is produced inside an open recording, from which
:class:`~femgax.fem.recording.AutoDiffJacobianExtractor` later pulls the
local Jacobian. :class:`GlobalSystemAssembler` loops over the elements owned
by every partition, scatters the local blocks into a :class:`GlobalSystem` and
closes it.

Example:
    >>> dofmap = DofMap(interval_mesh(2, 1.0), ["u"], ["LINE2"])
    >>> assembler = GlobalSystemAssembler(dofmap, LocalAssembler(Poisson()))
    >>> system = assembler.assemble(SolutionState(dofmap), AssemblyParams())
    >>> system.residual.norm()
"""
from dataclasses import dataclass
from typing import Optional

import jax
import jax.numpy as np
import numpy as onp

from femgax.errors import ConfigurationError
from femgax.fem import logger
from femgax.fem.recording import AutoDiffJacobianExtractor, JaxTape
from femgax.fem.system import SparseMatrix, SparseVector

from jax import config

config.update("jax_enable_x64", True)


class LocalAssembler:
    """Per-element residual assembly for an injected weak form.

    Args:
        weak_form (WeakForm): Pointwise integrand and its field metadata.
    """

    def __init__(self, weak_form):
        self.weak_form = weak_form
        self._kernels = {}

    def kernel(self, tables):
        """Jitted element residual ``kernel(u, u_old, coords, dt, coefficients)``.

        One kernel is compiled per table set and shared by all elements.
        """
        kernel = self._kernels.get(tables)
        if kernel is None:
            kernel = jax.jit(self._make_kernel(tables))
            self._kernels[tables] = kernel
        return kernel

    def _make_kernel(self, tables):
        weak_form = self.weak_form
        if weak_form.field_names and tuple(weak_form.field_names) != tuple(tables.field_names):
            raise ConfigurationError(
                f"Weak form fields {weak_form.field_names} differ from {tables.field_names}")
        unknown = set(weak_form.transient_fields) - set(tables.field_names)
        if unknown:
            raise ConfigurationError(f"Unknown transient fields {sorted(unknown)}")

        geo = tables.geometry
        geo_vals = np.asarray(geo.geo_vals)
        geo_grads = np.asarray(geo.geo_grads_ref)
        weights = np.asarray(geo.quad_weights)
        shape_vals = [np.asarray(fe.shape_vals) for fe in tables.elements]
        shape_grads_ref = [np.asarray(fe.shape_grads_ref) for fe in tables.elements]
        offsets = tables.offsets
        num_fields = len(tables.elements)
        transient = weak_form.transient_mask(tables.field_names)
        has_transient = bool(onp.any(onp.asarray(transient)))
        integrand = jax.vmap(weak_form.integrand, in_axes=(0, 0, 0, None))

        def kernel(cell_sol_flat, cell_old_flat, coords, dt, coefficients):
            # (num_quads, dim, dim)
            jac = np.einsum("ia,qib->qab", coords, geo_grads)
            JxW = weights * np.abs(np.linalg.det(jac))
            inv = np.linalg.inv(jac)
            x = geo_vals @ coords
            shape_grads = [np.einsum("qna,qab->qnb", g, inv) for g in shape_grads_ref]

            def interpolate(flat):
                blocks = [flat[offsets[f]:offsets[f + 1]] for f in range(num_fields)]
                u = np.stack([shape_vals[f] @ blocks[f] for f in range(num_fields)], axis=1)
                grad_u = np.stack([np.einsum("qnb,n->qb", shape_grads[f], blocks[f])
                                   for f in range(num_fields)], axis=1)
                return u, grad_u

            u, grad_u = interpolate(cell_sol_flat)
            source, flux = integrand(u, grad_u, x, coefficients)
            if has_transient:
                u_old, grad_u_old = interpolate(cell_old_flat)
                source_old, flux_old = integrand(u_old, grad_u_old, x, coefficients)
                source = np.where(transient[None, :],
                                  0.5 * (source + source_old) + (u - u_old) / dt, source)
                flux = np.where(transient[None, :, None], 0.5 * (flux + flux_old), flux)

            res = [np.einsum("q,qn->n", JxW * source[:, f], shape_vals[f])
                   + np.einsum("qb,qnb->n", JxW[:, None] * flux[:, f, :], shape_grads[f])
                   for f in range(num_fields)]
            return np.concatenate(res)

        return kernel

    def assemble_element(self, geometry, tables, local_current, local_old, params, tape=None):
        """Assemble the residual of one element.

        Args:
            geometry (numpy.ndarray): Vertex coordinates in Basix order.
            tables (ElementTables): Quadrature rule and shape tables.
            local_current (numpy.ndarray): Field-blocked nodal unknowns.
            local_old (numpy.ndarray): Nodal values of the previous step.
            params (AssemblyParams): Step size, time and coefficients.
            tape (DifferentiationTape, optional): When given, the residual is
                recorded for Jacobian extraction; when None the recording
                machinery stays idle.

        Returns:
            tuple: ``(local_residual, recording)``; ``recording`` is None for
            residual-only assembly and otherwise still open.
        """
        kernel = self.kernel(tables)
        args = (onp.asarray(local_old, dtype=onp.float64),
                onp.asarray(geometry, dtype=onp.float64),
                float(params.dt),
                self.weak_form.coefficients(params))
        current = onp.asarray(local_current, dtype=onp.float64).reshape(-1)
        if tape is None:
            return onp.asarray(kernel(current, *args)), None

        recording = tape.begin_recording()
        try:
            tape.declare_independents(current, tables.block_sizes)
            residual = tape.declare_dependents(kernel, *args)
        except Exception:
            tape.end_recording()
            raise
        return residual, recording


@dataclass
class GlobalSystem:
    """Residual vector and optional Jacobian matrix of one mesh level."""

    residual: object
    matrix: Optional[object] = None

    def zero(self):
        self.residual.zero()
        if self.matrix is not None:
            self.matrix.zero()

    def close(self):
        self.residual.close()
        if self.matrix is not None:
            self.matrix.close()


def create_system(size, num_partitions=1, with_matrix=True, backend="scipy"):
    """Create an empty global system on the requested backend."""
    if backend == "scipy":
        vector_cls, matrix_cls = SparseVector, SparseMatrix
    elif backend == "petsc":
        from femgax.fem.petsc_system import PetscMatrix, PetscVector
        vector_cls, matrix_cls = PetscVector, PetscMatrix
    else:
        raise ConfigurationError(f"Unknown system backend {backend!r}")
    matrix = matrix_cls(size, num_partitions) if with_matrix else None
    return GlobalSystem(vector_cls(size, num_partitions), matrix)


class GlobalSystemAssembler:
    """Scatters local element contributions into a global system.

    Args:
        dofmap (DofMap): Dof numbering of the mesh level.
        local_assembler (LocalAssembler): Element residual evaluator.
        boundary (BoundaryContributionEvaluator, optional): Natural-boundary loads.
        constraints (DirichletConstraints, optional): Dirichlet rows applied after close.
        tape (DifferentiationTape, optional): Differentiation strategy.
            Defaults to :class:`JaxTape`.
        backend (str, optional): 'scipy' (default) or 'petsc'.
    """

    def __init__(self, dofmap, local_assembler, boundary=None, constraints=None,
                 tape=None, backend="scipy"):
        self.dofmap = dofmap
        self.local_assembler = local_assembler
        self.boundary = boundary
        self.constraints = constraints
        self.tape = JaxTape() if tape is None else tape
        self.extractor = AutoDiffJacobianExtractor()
        self.backend = backend

    def create_system(self, with_matrix=True):
        return create_system(self.dofmap.num_dofs, self.dofmap.mesh.num_partitions,
                             with_matrix, self.backend)

    def assemble(self, state, params, with_matrix=True, system=None):
        """Zero, scatter every owned element of every partition, and close.

        Args:
            state (SolutionState): Current and old solution of the level.
            params (AssemblyParams): Per-pass assembly context.
            with_matrix (bool, optional): Also assemble the Jacobian. The
                residual is identical either way.
            system (GlobalSystem, optional): System to reuse.

        Returns:
            GlobalSystem: The closed system with Dirichlet rows applied.
        """
        dofmap = self.dofmap
        mesh = dofmap.mesh
        tables = dofmap.tables
        if system is None:
            system = self.create_system(with_matrix)
        if with_matrix and system.matrix is None:
            raise ConfigurationError("Matrix assembly requested on a residual-only system")
        tape = self.tape if with_matrix else None

        system.zero()
        for partition in range(mesh.num_partitions):
            for element in mesh.owned_elements(partition):
                dofs = dofmap.element_dofs(element)
                residual, recording = self.local_assembler.assemble_element(
                    mesh.cell_coords(element), tables, state.current[dofs], state.old[dofs],
                    params, tape)
                # close the recording before anything else can raise
                jac = None
                if recording is not None:
                    jac = self.extractor.extract(recording, tables.block_sizes)
                if self.boundary is not None and mesh.is_boundary_element(element):
                    residual = residual - self.boundary.evaluate(mesh, element, tables, params.time)
                system.residual.add_blocked(residual, dofs, partition=partition)
                if jac is not None:
                    system.matrix.add_blocked(jac, dofs, partition=partition)
        system.close()

        if self.constraints is not None:
            self.constraints.apply(system, state.current, params.time)
        logger.debug(f"Assembled system with {dofmap.num_dofs} dofs, "
                     f"with_matrix = {with_matrix}, res norm = {system.residual.norm()}")
        return system
