import itertools
import numpy as np
import pytest


def make_grid_mesh(n_rows: int, n_cols: int, step: float = 1.0):
    """
    Planar grid of triangles, vertex r * n_cols + c sits at (c * step, r * step).

    out: verts [n_rows*n_cols, 2], faces [2*(n_rows-1)*(n_cols-1), 3] (counter-clockwise)
    """
    xs, ys = np.meshgrid(np.arange(n_cols) * step, np.arange(n_rows) * step)
    verts = np.stack([xs.reshape(-1), ys.reshape(-1)], axis=-1).astype(np.float64)

    faces = []
    for r in range(n_rows - 1):
        for c in range(n_cols - 1):
            v00 = r * n_cols + c
            v01 = v00 + 1
            v10 = v00 + n_cols
            v11 = v10 + 1
            faces.append([v00, v01, v11])
            faces.append([v00, v11, v10])
    return verts, np.array(faces, dtype=np.int64)


def make_tet_column(z_levels):
    """
    Unit cubes stacked along z between consecutive z_levels, 6 tets per cube.
    Vertex 4 * k + x + 2y sits at (x, y, z_levels[k]).

    out: verts [4*Nz, 3], faces [6*(Nz-1), 4]
    """
    z_levels = np.asarray(z_levels, dtype=np.float64)
    verts = np.array([[x, y, z] for z in z_levels for y in [0., 1.] for x in [0., 1.]])

    faces = []
    for k in range(z_levels.shape[0] - 1):
        for a, b, _ in itertools.permutations([1, 2, 4]):
            faces.append([4 * k, 4 * k + a, 4 * k + a + b, 4 * k + 7])
    return verts, np.array(faces, dtype=np.int64)


@pytest.fixture
def square_mesh():
    verts = np.array([[0., 0.], [1., 0.], [1., 1.], [0., 1.]])
    faces = np.array([[0, 1, 2], [0, 2, 3]])
    return verts, faces


@pytest.fixture
def grid_mesh_2d():
    return make_grid_mesh(4, 5, step=0.5)


@pytest.fixture
def bumpy_surface():
    verts_2d, faces = make_grid_mesh(5, 5, step=0.25)
    z = 0.1 * np.sin(np.pi * verts_2d[:, 0]) * np.cos(np.pi * verts_2d[:, 1])
    verts = np.concatenate([verts_2d, z[:, None]], axis=-1)
    return verts, faces


@pytest.fixture
def cylinder_patch():
    # developable: planar strips between neighboring rulings
    n_theta, n_y = 6, 4
    thetas = np.linspace(-0.5, 0.5, n_theta)
    ys = np.linspace(0., 1., n_y)
    _, faces = make_grid_mesh(n_y, n_theta)
    tt, yy = np.meshgrid(thetas, ys)
    verts = np.stack([np.sin(tt).reshape(-1), yy.reshape(-1), np.cos(tt).reshape(-1)], axis=-1)
    return verts, faces


@pytest.fixture
def cube_tets():
    # unit cube split into 6 tets around the main diagonal, vertex index = x + 2y + 4z
    verts = np.array([[i & 1, (i >> 1) & 1, (i >> 2) & 1] for i in range(8)], dtype=np.float64)
    faces = []
    for a, b, _ in itertools.permutations([1, 2, 4]):
        faces.append([0, a, a + b, 7])
    return verts, np.array(faces, dtype=np.int64)


def rotation_2d(theta: float) -> np.ndarray:
    return np.array([[np.cos(theta), -np.sin(theta)],
                     [np.sin(theta), np.cos(theta)]])


def rotation_z(theta: float) -> np.ndarray:
    R = np.eye(3)
    R[:2, :2] = rotation_2d(theta)
    return R


def random_rotations(n: int, dim: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    Q, _ = np.linalg.qr(rng.normal(size=(n, dim, dim)))
    Q[np.linalg.det(Q) < 0, :, 0] *= -1.
    return Q
