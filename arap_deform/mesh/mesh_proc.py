from typing import Tuple
import igl
import numpy as np
import scipy.sparse as sp
from scipy import stats

from ..errors import ARAPInputError

# local vertex pairs of the edges of a simplex
# for triangles, edge c is the edge opposite to corner c
TRI_EDGES = np.array([[1, 2], [2, 0], [0, 1]], dtype=np.int64)
TET_EDGES = np.array([[0, 1], [0, 2], [0, 3], [1, 2], [1, 3], [2, 3]], dtype=np.int64)


def validate_mesh(verts: np.ndarray, faces: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    verts: [Nv, 2|3]
    faces: [Nf, 3] triangles or [Nf, 4] tetrahedra

    out: verts as float64, faces as int64
    """
    verts = np.asarray(verts, dtype=np.float64)
    faces = np.asarray(faces)

    if verts.ndim != 2 or verts.shape[1] not in [2, 3]:
        raise ARAPInputError(f'verts must be [Nv, 2] or [Nv, 3], got {verts.shape}')
    if faces.ndim != 2 or faces.shape[1] not in [3, 4]:
        raise ARAPInputError(f'faces must be [Nf, 3] (triangles) or [Nf, 4] (tetrahedra), got {faces.shape}')
    if faces.shape[0] == 0:
        raise ARAPInputError('mesh has no elements')
    if not np.issubdtype(faces.dtype, np.integer):
        if not np.all(np.equal(np.mod(faces, 1), 0)):
            raise ARAPInputError('faces must hold integer vertex indices')
    faces = faces.astype(np.int64)
    if faces.min() < 0 or faces.max() >= verts.shape[0]:
        raise ARAPInputError(f'face indices must lie in [0, {verts.shape[0]}), '
                             f'got [{faces.min()}, {faces.max()}]')
    if faces.shape[1] == 4 and verts.shape[1] != 3:
        raise ARAPInputError('tetrahedral meshes must be embedded in 3D')

    return verts, faces


def get_element_edges(faces: np.ndarray) -> np.ndarray:
    """
    faces: [Nf, 3|4]

    out: local edge pairs, [3, 2] for triangles and [6, 2] for tets
    """
    if faces.shape[1] == 3:
        return TRI_EDGES
    elif faces.shape[1] == 4:
        return TET_EDGES
    else:
        raise NotImplementedError(f'elements with {faces.shape[1]} vertices are not supported')


def get_unique_edges(faces: np.ndarray) -> np.ndarray:
    """
    faces: [Nf, 3|4]

    out: uedges [Ne, 2], each row sorted (i < j)
    """
    local_edges = get_element_edges(faces)
    edges = faces[:, local_edges].reshape(-1, 2)    # [Nf * Ne_local, 2]
    edges = np.sort(edges, axis=1)

    uedges = np.unique(edges, axis=0)
    return uedges


def avg_edge_length(verts: np.ndarray, faces: np.ndarray) -> float:
    uedges = get_unique_edges(faces)
    lengths = np.linalg.norm(verts[uedges[:, 0]] - verts[uedges[:, 1]], axis=-1)
    return float(lengths.mean())


def _cotangent(a: np.ndarray, b: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    # cot(theta) = dot(a,b) / ||a x b||, written without the cross product
    # so that it also works for triangles embedded in 2D
    dot = (a * b).sum(axis=-1)
    cross_sq = (a * a).sum(axis=-1) * (b * b).sum(axis=-1) - dot * dot
    denom = np.sqrt(np.clip(cross_sq, 0., None)).clip(min=eps)
    return dot / denom


def cotmatrix_entries(verts: np.ndarray, faces: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """
    Per element cotangent weights of the element edges listed by `get_element_edges`.

    triangles: C[f, c] = 0.5 * cot(angle at corner c), weight of the edge opposite to c
    tets:      C[f, e] = (1/6) * l_kl * cot(theta_kl), theta_kl the dihedral angle
               at the edge opposite to e, evaluated as -vol * <grad phi_i, grad phi_j>

    verts: [Nv, dim]
    faces: [Nf, 3] or [Nf, 4]

    out: C [Nf, 3] or [Nf, 6]
    """
    verts_by_faces = verts[faces]   # [Nf, 3|4 (verts), dim]

    if faces.shape[1] == 3:
        p0, p1, p2 = verts_by_faces[:, 0], verts_by_faces[:, 1], verts_by_faces[:, 2]
        cot_0 = _cotangent(p1 - p0, p2 - p0, eps=eps)   # angle at 0, opposite edge (1, 2)
        cot_1 = _cotangent(p2 - p1, p0 - p1, eps=eps)   # angle at 1, opposite edge (2, 0)
        cot_2 = _cotangent(p0 - p2, p1 - p2, eps=eps)   # angle at 2, opposite edge (0, 1)
        return 0.5 * np.stack([cot_0, cot_1, cot_2], axis=-1)

    elif faces.shape[1] == 4:
        e = verts_by_faces[:, 1:] - verts_by_faces[:, :1]   # [Nf, 3, 3], rows e1, e2, e3
        # columns of inv(E) times det(E) are the cyclic cross products
        c1 = np.cross(e[:, 1], e[:, 2])
        c2 = np.cross(e[:, 2], e[:, 0])
        c3 = np.cross(e[:, 0], e[:, 1])
        c0 = -(c1 + c2 + c3)
        c = np.stack([c0, c1, c2, c3], axis=1)          # [Nf, 4, 3], det(E) * grad(phi_i)
        det = (e[:, 0] * c1).sum(axis=-1)               # [Nf]
        abs_det = np.abs(det).clip(min=eps)

        i, j = TET_EDGES[:, 0], TET_EDGES[:, 1]
        dots = (c[:, i] * c[:, j]).sum(axis=-1)         # [Nf, 6]
        return -dots / (6. * abs_det[:, None])

    else:
        raise NotImplementedError(f'elements with {faces.shape[1]} vertices are not supported')


def cotmatrix(verts: np.ndarray, faces: np.ndarray) -> sp.csr_matrix:
    """
    Cotangent Laplacian of triangles or tets, negative semi-definite.
    L[i, j] is the sum of the `cotmatrix_entries` of edge (i, j).

    out: L [Nv, Nv], csr
    """
    L = igl.cotmatrix(np.ascontiguousarray(verts, dtype=np.float64),
                      np.ascontiguousarray(faces, dtype=np.int64))
    return sp.csr_matrix(L)


def get_element_volumes(verts: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """
    out: [Nf], triangle areas or tet volumes (unsigned)
    """
    e = verts[faces[:, 1:]] - verts[faces[:, :1]]   # [Nf, 2|3, dim]
    if faces.shape[1] == 3:
        a, b = e[:, 0], e[:, 1]
        dot = (a * b).sum(axis=-1)
        cross_sq = (a * a).sum(axis=-1) * (b * b).sum(axis=-1) - dot * dot
        return 0.5 * np.sqrt(np.clip(cross_sq, 0., None))
    return np.abs(np.linalg.det(e)) / 6.


def massmatrix(verts: np.ndarray, faces: np.ndarray, mass_type: str = 'voronoi') -> sp.csr_matrix:
    """
    Lumped mass matrix.

    mass_type:
    - 'voronoi': libigl voronoi mass (triangles only, tets fall back to barycentric)
    - 'barycentric': a third (quarter) of each triangle area (tet volume) per corner

    out: M [Nv, Nv], diagonal, csr
    """
    n_verts = verts.shape[0]
    if mass_type == 'voronoi' and faces.shape[1] == 3:
        M = igl.massmatrix(np.ascontiguousarray(verts, dtype=np.float64),
                           np.ascontiguousarray(faces, dtype=np.int64),
                           igl.MASSMATRIX_TYPE_VORONOI)
        return sp.csr_matrix(M)
    elif mass_type not in ['voronoi', 'barycentric']:
        raise NotImplementedError(f'unknown mass type {mass_type}')

    simplex_size = faces.shape[1]
    vols = get_element_volumes(verts, faces)    # [Nf]
    mass = np.zeros(n_verts)
    np.add.at(mass, faces.reshape(-1), np.repeat(vols / simplex_size, simplex_size))
    return sp.diags(mass).tocsr()


def group_sum_matrix(groups: np.ndarray, k: int = None) -> sp.csr_matrix:
    """
    groups: [N], group id in [0, k) for each item

    out: G_sum [k, N] such that G_sum @ x sums the items of every group
    """
    groups = np.asarray(groups, dtype=np.int64)
    if k is None:
        k = int(groups.max()) + 1
    n = groups.shape[0]
    G_sum = sp.coo_matrix((np.ones(n), (groups, np.arange(n))), shape=(k, n))
    return G_sum.tocsr()


def vertex_groups_to_element_groups(groups: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """
    Per element majority vote of per vertex group ids, ties go to the smaller id.

    groups: [Nv]
    faces:  [Nf, 3|4]

    out: [Nf]
    """
    return stats.mode(groups[faces], axis=1, keepdims=False).mode.astype(np.int64)


def plane_project(verts: np.ndarray, faces: np.ndarray, eps: float = 1e-12):
    """
    Isometrically flatten every triangle into its own plane.

    verts: [Nv, 3]
    faces: [Nf, 3]

    out:
    - ref_verts: [Nf*3, 2], corner c of face f is row 3*f + c
    - ref_faces: [Nf, 3], indices into ref_verts
    - ref_map:   [Nv, Nf*3], csr, ref_map[faces[f, c], 3*f + c] = 1
    """
    assert faces.shape[1] == 3
    n_verts = verts.shape[0]
    n_faces = faces.shape[0]

    verts_by_faces = verts[faces]   # [Nf, 3, dim]
    if verts.shape[1] == 2:
        ref_verts = verts_by_faces.reshape(-1, 2).copy()
    else:
        e01 = verts_by_faces[:, 1] - verts_by_faces[:, 0]
        e02 = verts_by_faces[:, 2] - verts_by_faces[:, 0]
        x_axis = e01 / np.linalg.norm(e01, axis=-1, keepdims=True).clip(min=eps)
        normal = np.cross(e01, e02)
        y_axis = np.cross(normal, x_axis)
        y_axis = y_axis / np.linalg.norm(y_axis, axis=-1, keepdims=True).clip(min=eps)

        local = verts_by_faces - verts_by_faces[:, :1]  # [Nf, 3, 3]
        ref_verts = np.stack([
            (local * x_axis[:, None]).sum(axis=-1),
            (local * y_axis[:, None]).sum(axis=-1),
        ], axis=-1).reshape(-1, 2)  # [Nf*3, 2]

    ref_faces = np.arange(n_faces * 3, dtype=np.int64).reshape(n_faces, 3)
    ref_map = sp.coo_matrix((np.ones(n_faces * 3), (faces.reshape(-1), np.arange(n_faces * 3))),
                            shape=(n_verts, n_faces * 3)).tocsr()
    return ref_verts, ref_faces, ref_map
