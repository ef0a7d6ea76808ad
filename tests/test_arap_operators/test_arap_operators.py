import numpy as np
import pytest

from arap_deform.errors import ARAPInputError
from arap_deform.deform.arap_operators import (get_arap_spokes, covariance_scatter_matrix, arap_rhs,
                                               build_arap_operators, stack_rotations, unstack_covariances)
from arap_deform.deform.rotations import fit_rotations
from arap_deform.mesh.mesh_proc import cotmatrix
from conftest import rotation_z, rotation_2d

ENERGIES = ['spokes', 'elements', 'spokes-and-rims']
MESHES = ['grid_mesh_2d', 'bumpy_surface', 'cube_tets']


@pytest.mark.parametrize('energy', ENERGIES)
@pytest.mark.parametrize('mesh_name', MESHES)
def test_spoke_weights_sum_to_cotangent_laplacian(energy, mesh_name, request):
    verts, faces = request.getfixturevalue(mesh_name)
    n_verts = verts.shape[0]
    spokes = get_arap_spokes(verts, faces, energy)

    W = np.zeros((n_verts, n_verts))
    np.add.at(W, (spokes.src, spokes.dst), spokes.weight)
    W = W + W.T
    L = cotmatrix(verts, faces).toarray()

    assert np.allclose(W - np.diag(np.diag(W)), L - np.diag(np.diag(L)))


@pytest.mark.parametrize('energy', ENERGIES)
def test_region_counts(energy, bumpy_surface):
    verts, faces = bumpy_surface
    ops = build_arap_operators(verts, faces, energy)

    n_regions = faces.shape[0] if energy == 'elements' else verts.shape[0]
    assert ops.n_regions == n_regions
    assert ops.csm.shape == (3 * n_regions, verts.shape[0])
    assert ops.rhs.shape == (verts.shape[0], 3 * n_regions)


def test_covariances_match_explicit_sum(grid_mesh_2d):
    verts, faces = grid_mesh_2d
    rng = np.random.default_rng(0)
    U = verts + 0.1 * rng.normal(size=verts.shape)

    spokes = get_arap_spokes(verts, faces, 'spokes')
    CSM = covariance_scatter_matrix(verts, faces, 'spokes')
    S = unstack_covariances(CSM @ U, 2)

    S_explicit = np.zeros((spokes.n_regions, 2, 2))
    for r, i, j, w in zip(spokes.region, spokes.src, spokes.dst, spokes.weight):
        S_explicit[r] += w * np.outer(verts[i] - verts[j], U[i] - U[j])

    assert np.allclose(S, S_explicit)


@pytest.mark.parametrize('energy', ENERGIES)
@pytest.mark.parametrize('mesh_name', MESHES)
def test_rest_covariances_fit_identity(energy, mesh_name, request):
    verts, faces = request.getfixturevalue(mesh_name)
    dim = verts.shape[1]
    CSM = covariance_scatter_matrix(verts, faces, energy)

    S = unstack_covariances(CSM @ verts, dim)
    R = fit_rotations(S)

    assert np.allclose(R, np.eye(dim), atol=1e-8)


@pytest.mark.parametrize('energy', ENERGIES)
@pytest.mark.parametrize('mesh_name', MESHES)
def test_rhs_of_global_rotation(energy, mesh_name, request):
    # K @ stack(R, ..., R) = -L @ V @ R^T, so the global step reproduces a rigid motion
    verts, faces = request.getfixturevalue(mesh_name)
    dim = verts.shape[1]
    R = rotation_z(0.3) if dim == 3 else rotation_2d(0.3)

    K = arap_rhs(verts, faces, energy)
    k = K.shape[1] // dim
    B = K @ stack_rotations(np.repeat(R[None], k, axis=0))
    L = cotmatrix(verts, faces)

    assert np.allclose(B, -(L @ verts) @ R.T)


def test_rhs_is_transpose_of_scatter(bumpy_surface):
    verts, faces = bumpy_surface
    CSM = covariance_scatter_matrix(verts, faces, 'spokes-and-rims')
    K = arap_rhs(verts, faces, 'spokes-and-rims')

    assert np.allclose(K.toarray(), CSM.toarray().T)


def test_stack_rotations_layout():
    R = np.arange(2 * 3 * 3, dtype=np.float64).reshape(2, 3, 3)
    stacked = stack_rotations(R)

    for r in range(2):
        for a in range(3):
            assert np.allclose(stacked[a * 2 + r], R[r, :, a])


def test_groups_sum_covariances(bumpy_surface):
    verts, faces = bumpy_surface
    rng = np.random.default_rng(1)
    groups = rng.integers(0, 4, size=verts.shape[0])
    groups[:4] = np.arange(4)
    U = verts + 0.05 * rng.normal(size=verts.shape)

    ops = build_arap_operators(verts, faces, 'spokes')
    ops_grouped = build_arap_operators(verts, faces, 'spokes', groups=groups)

    S = unstack_covariances(ops.csm @ U, 3)
    S_grouped = unstack_covariances(ops_grouped.csm @ U, 3)

    assert ops_grouped.n_groups == 4
    assert ops_grouped.n_rotations == 4
    for g in range(4):
        assert np.allclose(S_grouped[g], S[groups == g].sum(axis=0))


def test_vertex_groups_with_elements_energy(bumpy_surface):
    verts, faces = bumpy_surface
    groups = (verts[:, 0] > 0.5).astype(np.int64)

    ops = build_arap_operators(verts, faces, 'elements', groups=groups)

    assert ops.groups.shape == (faces.shape[0],)
    assert ops.csm.shape == (3 * 2, verts.shape[0])


def test_flat_operators(cylinder_patch):
    verts, faces = cylinder_patch
    ops = build_arap_operators(verts, faces, 'elements', flat=True)

    assert ops.dim == 2
    assert ops.csm.shape == (2 * faces.shape[0], verts.shape[0])
    assert ops.rhs.shape == (verts.shape[0], 2 * faces.shape[0])


def test_reuse_precomputed_csm(bumpy_surface):
    verts, faces = bumpy_surface
    ops = build_arap_operators(verts, faces, 'spokes')
    ops_reused = build_arap_operators(verts, faces, 'spokes', csm=ops.csm)

    assert (ops_reused.csm != ops.csm).nnz == 0

    with pytest.raises(ARAPInputError):
        build_arap_operators(verts, faces, 'elements', csm=ops.csm)


def test_invalid_operator_options(bumpy_surface, cube_tets):
    verts, faces = bumpy_surface

    with pytest.raises(ARAPInputError):
        build_arap_operators(verts, faces, 'rims')
    with pytest.raises(ARAPInputError):
        build_arap_operators(verts, faces, 'spokes', flat=True)
    with pytest.raises(ARAPInputError):
        build_arap_operators(verts, faces, 'spokes', groups=np.zeros(3, dtype=np.int64))
    with pytest.raises(ARAPInputError):
        build_arap_operators(*cube_tets, 'elements', flat=True)
