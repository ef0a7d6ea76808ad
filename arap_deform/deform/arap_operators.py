from dataclasses import dataclass
from typing import Optional
import numpy as np
import scipy.sparse as sp

from ..errors import ARAPInputError
from ..mesh.mesh_proc import (cotmatrix, cotmatrix_entries, get_element_edges, group_sum_matrix,
                              plane_project, vertex_groups_to_element_groups)
from .config import ARAPEnergy, parse_energy


@dataclass
class ARAPSpokes:
    """
    Weighted rest edges grouped into rotation regions.
    Edge t goes from vertex src[t] to dst[t] and is rotated by region[t].
    """
    region: np.ndarray  # [m]
    src: np.ndarray     # [m]
    dst: np.ndarray     # [m]
    weight: np.ndarray  # [m]
    n_regions: int


@dataclass
class ARAPOperators:
    L: sp.csr_matrix        # [Nv, Nv], cotangent Laplacian
    csm: sp.csr_matrix      # [dim*k, Nv], covariance scatter matrix (grouped if groups is given)
    rhs: sp.csr_matrix      # [Nv, dim*n_regions], right hand side operator
    dim: int
    n_regions: int          # rotations needed by rhs
    groups: Optional[np.ndarray] = None     # [n_regions], group of every region
    n_groups: Optional[int] = None

    @property
    def n_rotations(self) -> int:
        """number of rotations fitted per iteration"""
        return self.csm.shape[0] // self.dim


def get_arap_spokes(verts: np.ndarray, faces: np.ndarray, energy) -> ARAPSpokes:
    """
    Every element edge is split between the regions that see it, the weights of a
    single edge summing to its cotangent entry. Hence all energies share the same
    quadratic term, tr(U^T (-L) U).

    verts: [Nv, dim]
    faces: [Nf, 3|4]
    """
    energy = parse_energy(energy)
    n_verts = verts.shape[0]
    n_faces, simplex_size = faces.shape

    C = cotmatrix_entries(verts, faces)     # [Nf, Ne]
    local_edges = get_element_edges(faces)  # [Ne, 2]
    n_local_edges = local_edges.shape[0]
    ii = faces[:, local_edges[:, 0]]        # [Nf, Ne]
    jj = faces[:, local_edges[:, 1]]        # [Nf, Ne]

    if energy == ARAPEnergy.ELEMENTS:
        region = np.repeat(np.arange(n_faces), n_local_edges).reshape(n_faces, n_local_edges)
        return ARAPSpokes(region.reshape(-1), ii.reshape(-1), jj.reshape(-1), C.reshape(-1), n_faces)

    elif energy == ARAPEnergy.SPOKES:
        # each edge belongs to the one-rings of both of its end points
        region = np.concatenate([ii.reshape(-1), jj.reshape(-1)])
        src = np.concatenate([ii.reshape(-1), jj.reshape(-1)])
        dst = np.concatenate([jj.reshape(-1), ii.reshape(-1)])
        weight = np.concatenate([C.reshape(-1), C.reshape(-1)]) * 0.5
        return ARAPSpokes(region, src, dst, weight, n_verts)

    elif energy == ARAPEnergy.SPOKES_AND_RIMS:
        # each edge belongs to the regions of all corners of the element
        region = np.repeat(faces[:, :, None], n_local_edges, axis=2)    # [Nf, S, Ne]
        src = np.repeat(ii[:, None, :], simplex_size, axis=1)           # [Nf, S, Ne]
        dst = np.repeat(jj[:, None, :], simplex_size, axis=1)
        weight = np.repeat(C[:, None, :], simplex_size, axis=1) / simplex_size
        return ARAPSpokes(region.reshape(-1), src.reshape(-1), dst.reshape(-1), weight.reshape(-1), n_verts)

    else:
        raise NotImplementedError(f'energy {energy} not implemented')


def covariance_scatter_matrix(verts: np.ndarray, faces: np.ndarray, energy) -> sp.csr_matrix:
    """
    Linear map from deformed positions to covariance matrices.

    S_flat = CSM @ U, U: [Nv, dim], S_flat: [dim*k, dim],
    S_flat[a*k + r, b] = S[r, a, b] = sum_{t in r} w_t * e_rest_t[a] * e_def_t[b],
    see `unstack_covariances`.

    out: CSM [dim*k, Nv], csr
    """
    n_verts, dim = verts.shape
    spokes = get_arap_spokes(verts, faces, energy)
    k = spokes.n_regions

    e_rest = verts[spokes.src] - verts[spokes.dst]      # [m, dim]
    we = spokes.weight[:, None] * e_rest                # [m, dim]

    rows, cols, vals = [], [], []
    for a in range(dim):
        rows += [a * k + spokes.region, a * k + spokes.region]
        cols += [spokes.src, spokes.dst]
        vals += [we[:, a], -we[:, a]]

    CSM = sp.coo_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                        shape=(dim * k, n_verts))
    return CSM.tocsr()


def arap_rhs(verts: np.ndarray, faces: np.ndarray, energy) -> sp.csr_matrix:
    """
    Linear map from stacked rotations to the right hand side of the global step,
    B = K @ stack_rotations(R), B[i] = sum_{t: src_t = i} w_t R_t e_rest_t - sum_{t: dst_t = i} w_t R_t e_rest_t

    This is the gradient part of the energy that is linear in U, so K is the
    transpose of the covariance scatter matrix of the same regions.

    out: K [Nv, dim*k], csr
    """
    return covariance_scatter_matrix(verts, faces, energy).transpose().tocsr()


def stack_rotations(R: np.ndarray) -> np.ndarray:
    """
    R: [k, dim, dim]

    out: [dim*k, dim], out[a*k + r, b] = R[r, b, a]
    """
    k, dim, _ = R.shape
    return R.transpose(2, 0, 1).reshape(dim * k, dim)


def unstack_covariances(S_flat: np.ndarray, dim: int) -> np.ndarray:
    """
    S_flat: [dim*k, dim], output of CSM @ U

    out: [k, dim, dim]
    """
    k = S_flat.shape[0] // dim
    return S_flat.reshape(dim, k, dim).transpose(1, 0, 2)


def _check_groups(groups, faces: np.ndarray, n_verts: int, energy: ARAPEnergy) -> np.ndarray:
    groups = np.asarray(groups)
    if groups.ndim != 1 or not np.issubdtype(groups.dtype, np.integer):
        raise ARAPInputError('groups must be a 1D integer array')
    if groups.shape[0] > 0 and groups.min() < 0:
        raise ARAPInputError('group ids must be non-negative')
    groups = groups.astype(np.int64)

    n_faces = faces.shape[0]
    if energy == ARAPEnergy.ELEMENTS:
        if groups.shape[0] != n_faces and groups.shape[0] == n_verts:
            # groups are defined per vertex, convert to per element by majority vote
            groups = vertex_groups_to_element_groups(groups, faces)
        elif groups.shape[0] != n_faces:
            raise ARAPInputError(f'elements energy needs {n_faces} (per element) or {n_verts} (per vertex) '
                                 f'group ids, got {groups.shape[0]}')
    elif groups.shape[0] != n_verts:
        raise ARAPInputError(f'{energy.value} energy needs {n_verts} (per vertex) group ids, got {groups.shape[0]}')

    return groups


def build_arap_operators(verts: np.ndarray,
                         faces: np.ndarray,
                         energy = ARAPEnergy.SPOKES,
                         groups: Optional[np.ndarray] = None,
                         flat: bool = False,
                         csm: Optional[sp.spmatrix] = None) -> ARAPOperators:
    """
    Laplacian, covariance scatter matrix and rhs operator of a rest mesh.

    verts: [Nv, dim]
    faces: [Nf, 3|4]
    groups: per vertex (or per element, elements energy only) group ids in [0, k),
            one rotation is shared by every group
    flat: build the operators on the per triangle plane projections, yields dim = 2
    csm: precomputed covariance scatter matrix (grouped) to reuse
    """
    energy = parse_energy(energy)
    n_verts = verts.shape[0]

    n_groups = None
    if groups is not None:
        groups = _check_groups(groups, faces, n_verts, energy)
        n_groups = int(groups.max()) + 1

    if flat:
        if energy != ARAPEnergy.ELEMENTS:
            raise ARAPInputError('flat only makes sense with elements energy')
        if faces.shape[1] != 3:
            raise ARAPInputError('flat needs a triangle mesh')
        ref_verts, ref_faces, ref_map = plane_project(verts, faces)
    else:
        ref_verts, ref_faces, ref_map = verts, faces, None
    dim = ref_verts.shape[1]

    L = cotmatrix(verts, faces)

    K = arap_rhs(ref_verts, ref_faces, energy)
    if ref_map is not None:
        K = (ref_map @ K).tocsr()
    n_regions = K.shape[1] // dim

    if csm is None:
        csm = K.transpose().tocsr()
        if groups is not None:
            G_sum = group_sum_matrix(groups, n_groups)
            csm = (sp.kron(sp.identity(dim), G_sum) @ csm).tocsr()
    else:
        csm = sp.csr_matrix(csm)
        k = n_groups if groups is not None else n_regions
        if csm.shape != (dim * k, n_verts):
            raise ARAPInputError(f'covariance scatter matrix must be {(dim * k, n_verts)}, got {csm.shape}')

    return ARAPOperators(L, csm, K, dim, n_regions, groups, n_groups)
