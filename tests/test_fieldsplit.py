"""
Tests for femgax.solvers: preconditioners, outer schemes and field-split trees.
"""
import pytest
import numpy as np
import scipy.sparse
import scipy.sparse.linalg

from femgax.config import fieldsplit_from_dict
from femgax.errors import ConfigurationError, FieldSplitError
from femgax.fem.dofmap import DofMap
from femgax.fem.mesh import rectangle_mesh
from femgax.solvers.fieldsplit import BlockLayout, FieldSplitTree
from femgax.solvers.krylov import krylov_solve
from femgax.solvers.linear_types import CompositionKind, PreconditionerKind, SolverKind
from femgax.solvers.preconditioners import AdditiveSchwarz, make_preconditioner

pytestmark = pytest.mark.integration


def dominant_system(field_sizes, seed=0, density=0.3):
    """Random diagonally dominant sparse matrix over a BlockLayout."""
    rng = np.random.default_rng(seed)
    n = sum(field_sizes)
    A = rng.random((n, n)) * (rng.random((n, n)) < density)
    A = A + A.T
    A += np.diag(np.abs(A).sum(axis=1) + 1.0)
    return scipy.sparse.csr_array(A), rng.normal(size=n)


class TestPreconditioners:
    """Single-level preconditioners and outer schemes."""

    @pytest.mark.parametrize("kind", ["none", "jacobi", "ilu", "lu"])
    def test_gmres_with_each_preconditioner(self, kind):
        A, b = dominant_system((12,))
        M = make_preconditioner(kind, A)
        result = krylov_solve("gmres", A, b, M, rtol=1e-12, max_iterations=50)
        assert result.converged
        np.testing.assert_allclose(result.x, scipy.sparse.linalg.spsolve(A.tocsc(), b), rtol=1e-8, atol=1e-10)

    def test_lu_preonly_is_exact(self):
        A, b = dominant_system((10,), seed=2)
        result = krylov_solve(SolverKind.PREONLY, A, b, make_preconditioner("lu", A))
        assert result.n_iter == 1
        assert result.residual_norm < 1e-10

    def test_richardson_respects_cap(self):
        A, b = dominant_system((10,), seed=3)
        result = krylov_solve("richardson", A, b, make_preconditioner("jacobi", A),
                              rtol=1e-14, max_iterations=3)
        assert result.n_iter == 3
        assert not result.converged
        assert result.message == "iteration limit reached"
        assert result.residual_norm < np.linalg.norm(b)

    def test_bicgstab(self):
        A, b = dominant_system((15,), seed=4)
        result = krylov_solve("bicgstab", A, b, make_preconditioner("ilu", A), rtol=1e-12)
        assert result.converged

    def test_unknown_kind(self):
        A, _ = dominant_system((4,))
        with pytest.raises(ValueError):
            make_preconditioner("amg", A)
        with pytest.raises(ConfigurationError):
            make_preconditioner("fieldsplit", A)
        with pytest.raises(ConfigurationError):
            make_preconditioner("asm", A)

    def test_schwarz_with_one_block_is_exact(self):
        layout = BlockLayout((4, 4, 4))
        A, b = dominant_system(layout.field_sizes, seed=5)
        asm = AdditiveSchwarz(A, layout, [0, 1, 2], np.arange(12), block_size=4)
        assert len(asm.subdomains) == 1
        np.testing.assert_allclose(A @ asm.apply(b), b, atol=1e-10)

    def test_schwarz_schur_complement_is_exact(self):
        layout = BlockLayout((3, 3))
        A, b = dominant_system(layout.field_sizes, seed=6)
        asm = AdditiveSchwarz(A, layout, [0, 1], np.arange(6), block_size=3, schur_variables=1)
        np.testing.assert_allclose(A @ asm.apply(b), b, atol=1e-10)

    def test_schwarz_respects_partitions(self):
        layout = BlockLayout((6, 6), num_partitions=2)
        A, _ = dominant_system(layout.field_sizes, seed=7)
        asm = AdditiveSchwarz(A, layout, [0, 1], np.arange(12), block_size=4)
        # 3 + 3 elements per partition give blocks of 3 rather than 4 + 2
        assert [len(local) for local, _, _ in asm.subdomains] == [6, 6]

    def test_schwarz_on_mesh_layout(self):
        dofmap = DofMap(rectangle_mesh(4, 2, 1.0, 1.0, num_partitions=2), ["u", "p"],
                        ["QUAD9", "QUAD_DG1"])
        rng = np.random.default_rng(8)
        n = dofmap.num_dofs
        A = scipy.sparse.csr_array(np.eye(n) * 4.0 + 0.01 * rng.normal(size=(n, n)))
        M = make_preconditioner("asm", A, layout=dofmap, fields=[0, 1], block_size=2,
                                schur_variables=1)
        assert np.all(np.isfinite(M @ rng.normal(size=n)))


class TestFieldSplitTree:
    """Construction rules and interpretation of the tree."""

    def test_leaf_rejects_fieldsplit(self):
        with pytest.raises(FieldSplitError):
            FieldSplitTree.create_leaf("preonly", "fieldsplit", [0])

    def test_leaf_rejects_empty_and_repeated(self):
        with pytest.raises(FieldSplitError):
            FieldSplitTree.create_leaf("preonly", "ilu", [])
        with pytest.raises(FieldSplitError):
            FieldSplitTree.create_leaf("preonly", "ilu", [1, 1])

    def test_leaf_tag_count(self):
        with pytest.raises(FieldSplitError):
            FieldSplitTree.create_leaf("preonly", "ilu", [0, 1], ["QUAD9"])

    def test_node_rejects_overlap(self):
        a = FieldSplitTree.create_leaf("preonly", "ilu", [0, 1], label="a")
        b = FieldSplitTree.create_leaf("preonly", "ilu", [1, 2], label="b")
        with pytest.raises(FieldSplitError, match="field 1"):
            FieldSplitTree.create_node("richardson", "fieldsplit", [a, b])

    def test_node_requires_fieldsplit(self):
        a = FieldSplitTree.create_leaf("preonly", "ilu", [0])
        with pytest.raises(FieldSplitError):
            FieldSplitTree.create_node("richardson", "asm", [a])

    def test_validate_cover(self):
        ns = FieldSplitTree.create_leaf("preonly", "asm", [0, 1, 2], label="Navier-Stokes")
        t = FieldSplitTree.create_leaf("preonly", "asm", [3], label="Temperature")
        root = FieldSplitTree.create_node("richardson", "fieldsplit", [ns, t], label="Benard")
        root.validate(range(4))
        assert root.fields == (0, 1, 2, 3)
        assert [leaf.label for leaf in root.leaves()] == ["Navier-Stokes", "Temperature"]
        with pytest.raises(FieldSplitError, match="missing \\[4\\]"):
            root.validate(range(5))
        with pytest.raises(FieldSplitError, match="unknown \\[3\\]"):
            root.validate(range(3))

    def test_setters_chain(self):
        leaf = FieldSplitTree.create_leaf("preonly", "asm", [0, 1, 2])
        assert leaf.set_asm_block_size(4).set_asm_schur_variables(1) is leaf
        assert (leaf.asm_block_size, leaf.asm_schur_variables) == (4, 1)
        with pytest.raises(FieldSplitError):
            leaf.set_asm_block_size(0)

    @pytest.mark.parametrize("composition", ["multiplicative", "additive"])
    def test_two_leaf_richardson_matches_direct_solve(self, composition):
        layout = BlockLayout((5, 5, 5, 5))
        A, b = dominant_system(layout.field_sizes, seed=9, density=0.1)
        ns = FieldSplitTree.create_leaf("preonly", "lu", [0, 1, 2])
        t = FieldSplitTree.create_leaf("preonly", "lu", [3])
        root = FieldSplitTree.create_node("richardson", "fieldsplit", [ns, t])
        root.set_composition(composition)
        result = root.solve(A, b, layout, rtol=1e-12, max_iterations=200)
        assert result.converged
        np.testing.assert_allclose(result.x, scipy.sparse.linalg.spsolve(A.tocsc(), b), rtol=1e-8, atol=1e-10)

    def test_nested_outer_scheme(self):
        layout = BlockLayout((4, 4, 4))
        A, b = dominant_system(layout.field_sizes, seed=10)
        inner = FieldSplitTree.create_leaf("richardson", "jacobi", [0, 1]).set_tolerances(0.0, 5)
        last = FieldSplitTree.create_leaf("preonly", "ilu", [2])
        root = FieldSplitTree.create_node("richardson", "fieldsplit", [inner, last])
        result = root.solve(A, b, layout, rtol=1e-10, max_iterations=200)
        assert result.converged

    def test_solution_type_tags(self):
        dofmap = DofMap(rectangle_mesh(2, 2, 1.0, 1.0), ["u", "p"], ["QUAD9", "QUAD_DG1"])
        A = scipy.sparse.eye_array(dofmap.num_dofs).tocsr()
        good = FieldSplitTree.create_leaf("preonly", "jacobi", [0, 1], ["QUAD9", "QUAD_DG1"])
        good.build(A, dofmap)
        bad = FieldSplitTree.create_leaf("preonly", "jacobi", [0, 1], ["QUAD9", "QUAD9"])
        with pytest.raises(FieldSplitError):
            bad.build(A, dofmap)

    def test_from_dict(self):
        tree = fieldsplit_from_dict({
            "label": "Benard",
            "outer": "richardson",
            "composition": "additive",
            "children": [
                {"label": "Navier-Stokes", "preconditioner": "asm", "fields": ["U", "V", "P"],
                 "asm_block_size": 4, "asm_schur_variables": 1},
                {"label": "Temperature", "preconditioner": "asm", "fields": [3],
                 "outer": "richardson", "rtol": 1e-3, "max_iterations": 5},
            ],
        }, field_names=("U", "V", "P", "T"))
        assert tree.composition == CompositionKind.ADDITIVE
        ns, t = tree.children
        assert ns.fields == (0, 1, 2)
        assert ns.preconditioner == PreconditionerKind.ASM
        assert ns.asm_block_size == 4
        assert t.fields == (3,)
        assert (t.outer, t.rtol, t.max_iterations) == (SolverKind.RICHARDSON, 1e-3, 5)
        assert (ns.rtol, ns.max_iterations) == (0.0, 1)

    def test_from_dict_bad_tolerance(self):
        with pytest.raises(ConfigurationError, match="fieldsplit.T.max_iterations"):
            fieldsplit_from_dict({"label": "T", "fields": [0], "max_iterations": "many"})

    def test_from_dict_unknown_field(self):
        with pytest.raises(ConfigurationError):
            fieldsplit_from_dict({"fields": ["W"]}, field_names=("U",))
