import logging
from enum import Enum
from dataclasses import dataclass, replace
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional
import numpy as np
import scipy.sparse as sp
from tqdm import tqdm

from ..errors import ARAPInputError, ARAPIterationError, SingularSystemError
from ..mesh.mesh_proc import validate_mesh, avg_edge_length, cotmatrix, massmatrix
from ..misc.tensor_utils import np2th, th2np
from ..pcd_proc.pcd_proc import sample_farthest_points
from .arap_operators import ARAPOperators, build_arap_operators, stack_rotations, unstack_covariances
from .config import ARAPConfig, make_arap_config, parse_energy
from .quad_solver import QuadFactorization, min_quad_with_fixed
from .rotations import fit_rotations

logger = logging.getLogger(__name__)


class ARAPState(Enum):
    INITIALIZING = 'initializing'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_ITERS_REACHED = 'max_iters_reached'


TERMINAL_STATES = (ARAPState.CONVERGED, ARAPState.MAX_ITERS_REACHED)


@dataclass
class ARAPResult:
    U: np.ndarray                   # [Nv, dim], deformed positions
    csm: sp.csr_matrix              # [dim*k, Nv], covariance scatter matrix, pass back as `csm` to reuse
    covariances: Optional[np.ndarray]   # [k, dim, dim], from the last local step
    rotations: Optional[np.ndarray]     # [k, dim, dim], from the last local step, one per group if grouped
    iterations: int
    converged: bool
    state: ARAPState
    energy: Optional[float] = None


def axis_rotation(axis: np.ndarray, angle: float) -> np.ndarray:
    """
    Rodrigues formula, right handed rotation of column vectors about a unit axis
    """
    axis = np.asarray(axis, dtype=np.float64)
    K = np.array([[0., -axis[2], axis[1]],
                  [axis[2], 0., -axis[0]],
                  [-axis[1], axis[0], 0.]])
    return np.eye(3) + np.sin(angle) * K + (1. - np.cos(angle)) * (K @ K)


def remove_rigid_motion(U: np.ndarray, anchors: np.ndarray) -> np.ndarray:
    """
    Rigidly move U to a canonical frame: anchors[0] to the origin, then (3D) rotate
    about y and x so that anchors[1] lies on the z axis and about z so that
    anchors[2] has x = 0; (2D) rotate so that anchors[1] lies on the y axis.

    U: [Nv, 2|3]
    anchors: [dim]
    """
    U = U - U[anchors[0]]
    dim = U.shape[1]

    if dim == 3:
        p = U[anchors[1]]
        R = axis_rotation([0., 1., 0.], np.arctan2(-p[0], p[2]))
        U = U @ R.T
        p = U[anchors[1]]
        R = axis_rotation([1., 0., 0.], np.arctan2(p[1], p[2]))
        U = U @ R.T
        p = U[anchors[2]]
        R = axis_rotation([0., 0., 1.], np.arctan2(p[0], p[1]))
        U = U @ R.T
    elif dim == 2:
        p = U[anchors[1]]
        theta = np.arctan2(p[0], p[1])
        R = np.array([[np.cos(theta), -np.sin(theta)],
                      [np.sin(theta), np.cos(theta)]])
        U = U @ R.T
    else:
        raise NotImplementedError(f'unsupported dimension {dim}')

    return U


def biharmonic_guess(verts: np.ndarray, faces: np.ndarray, b: np.ndarray, bc: np.ndarray) -> np.ndarray:
    """
    Smooth deformation meeting the constraints: keeps the Laplacian coordinates
    of verts in the least squares sense, min ||M^-1/2 L (U - verts)||^2 s.t. U[b] = bc.

    verts: [Nv, dim]
    """
    if b.shape[0] == 0:
        return verts.copy()

    L = cotmatrix(verts, faces)
    mass = massmatrix(verts, faces, 'barycentric').diagonal()
    Minv = sp.diags(1. / mass.clip(min=1e-12))
    Q = (L.T @ Minv @ L).tocsr()
    U, _ = min_quad_with_fixed(Q, -(Q @ verts), b, bc)
    return U


def _principal_plane_coords(verts: np.ndarray, faces: np.ndarray) -> np.ndarray:
    centered = verts - verts.mean(axis=0, keepdims=True)
    _, _, Vh = np.linalg.svd(centered, full_matrices=False)
    coords = centered @ Vh[:2].T

    # keep the triangles counter-clockwise, as the per triangle reference frames are
    e01 = coords[faces[:, 1]] - coords[faces[:, 0]]
    e02 = coords[faces[:, 2]] - coords[faces[:, 0]]
    if (e01[:, 0] * e02[:, 1] - e01[:, 1] * e02[:, 0]).sum() < 0:
        coords[:, 1] *= -1.
    return coords


class ARAPSolver:
    """
    Local/global ARAP iterations. The constructor validates the inputs and
    precomputes everything (INITIALIZING); every `step` call is one local step
    (rotation fitting) followed by one global step (constrained linear solve)
    until CONVERGED or MAX_ITERS_REACHED. `run` steps until a terminal state.

    verts: [Nv, dim] rest positions
    faces: [Nf, 3] triangles or [Nf, 4] tets
    b:  [Nb] constrained vertex indices
    bc: [Nb, dim] their positions
    U0: [Nv, dim] initial guess
    R0: [k, dim, dim] initial guess of the rotations (one per region or group),
        used when U0 is not given
    csm: covariance scatter matrix of a previous result on the same mesh
    groups: [Nv] (or [Nf], elements energy) group ids, one rotation per group
    fext: [Nv, dim] external forces (dynamic)
    Vm1: [Nv, dim] positions at the previous time step (dynamic)

    With `config.dynamic` the global step minimizes
        E_arap / 2 + 1/(2h^2) ||U - U0 - h vel||_M^2 - <fext, U>,  vel = (U0 - Vm1) / h
    """
    def __init__(self,
                 verts: np.ndarray,
                 faces: np.ndarray,
                 b: Optional[np.ndarray] = None,
                 bc: Optional[np.ndarray] = None,
                 config: Optional[ARAPConfig] = None,
                 U0: Optional[np.ndarray] = None,
                 R0: Optional[np.ndarray] = None,
                 csm: Optional[sp.spmatrix] = None,
                 groups: Optional[np.ndarray] = None,
                 fext: Optional[np.ndarray] = None,
                 Vm1: Optional[np.ndarray] = None):

        self.state = ARAPState.INITIALIZING
        self.config = config = (config if config is not None else ARAPConfig()).validate()
        self.energy_type = parse_energy(config.energy)

        # validation
        self.verts, self.faces = verts, faces = validate_mesh(verts, faces)
        n_verts = verts.shape[0]
        if config.flat and faces.shape[1] != 3:
            raise ARAPInputError('flat needs a triangle mesh')
        self.dim = dim = 2 if config.flat else verts.shape[1]

        self.b, self.bc = b, bc = self._check_constraints(b, bc, n_verts, dim)
        U0 = self._check_positions(U0, 'U0', n_verts, dim)
        Vm1 = self._check_positions(Vm1, 'Vm1', n_verts, dim)
        fext = self._check_positions(fext, 'fext', n_verts, dim)
        if config.remove_rigid and n_verts < dim:
            raise ARAPInputError(f'remove_rigid needs at least {dim} vertices')

        # operators
        self.ops: ARAPOperators = build_arap_operators(verts, faces, self.energy_type, groups, config.flat, csm)
        if R0 is not None:
            R0 = np.asarray(R0, dtype=np.float64)
            if R0.shape != (self.ops.n_rotations, dim, dim):
                raise ARAPInputError(f'R0 must be {(self.ops.n_rotations, dim, dim)}, got {R0.shape}')
        self.avg_edge = avg_edge_length(verts, faces)
        self.L = self.ops.L

        # initial guess
        if U0 is not None:
            U = U0.copy()
        elif dim == 2:
            rest_2d = verts if verts.shape[1] == 2 else _principal_plane_coords(verts, faces)
            U = biharmonic_guess(rest_2d, faces, b, bc)
        else:
            U = verts.copy()

        # global step system: 0.5 * tr(U^T A U) + tr(U^T lin)
        A = -self.L
        self.lin_const = np.zeros((n_verts, dim))
        if config.dynamic:
            h = config.time_step
            M = massmatrix(verts, faces)
            V0 = U.copy()
            if Vm1 is None:
                Vm1 = V0
            vel = (V0 - Vm1) / h
            A = A + M / h**2
            self.lin_const = -(M @ (V0 + h * vel)) / h**2
            if fext is not None:
                self.lin_const = self.lin_const - fext
        if config.tikhonov > 0:
            A = A + config.tikhonov * sp.identity(n_verts)

        # rigid motion removal: per axis anchors instead of a joint constraint set
        self.rr_known: Optional[List[np.ndarray]] = None
        self.rr_values: Optional[List[np.ndarray]] = None
        if config.remove_rigid:
            if b.shape[0] > 0:
                logger.warning('remove_rigid constraints are not typically wanted together with |b| > 0')
            _, anchors = sample_farthest_points(np2th(verts), dim)
            anchors = th2np(anchors)
            self.anchors = anchors
            self.rr_known, self.rr_values = [], []
            b_set = set(b.tolist())
            for c in range(dim):
                extra = np.array([a for a in anchors[:dim - c] if a not in b_set], dtype=np.int64)
                self.rr_known.append(np.concatenate([b, extra]))
                self.rr_values.append(np.concatenate([bc[:, c], np.zeros(extra.shape[0])]))
            U = remove_rigid_motion(U, anchors)
            logger.debug(f'removing rigid motion with anchors {anchors.tolist()}')

        # nothing pins the translations of the pure Laplacian: proximal term towards the last iterate
        self.prox = 0.
        if b.shape[0] == 0 and not config.remove_rigid and not config.dynamic and config.tikhonov == 0:
            self.prox = 1e-8 * np.abs(A.diagonal()).max()
            A = A + self.prox * sp.identity(n_verts)
            logger.debug(f'no constraints, regularizing with proximal weight {self.prox:.3e}')

        self.A = sp.csr_matrix(A)
        self.pre: Optional[QuadFactorization] = None
        self.rr_pre: List[Optional[QuadFactorization]] = [None] * dim

        self.U = U
        if R0 is not None and U0 is None:
            self.U = self._global_solve(self._expand_rotations(R0), U)

        self.iteration = 0
        self.change = float('inf')
        self.covariances: Optional[np.ndarray] = None
        self.rotations: Optional[np.ndarray] = None
        self.energy: Optional[float] = None
        self.state = ARAPState.ITERATING

    @staticmethod
    def _check_constraints(b, bc, n_verts: int, dim: int):
        if b is None:
            b = np.zeros(0, dtype=np.int64)
        b = np.asarray(b).reshape(-1)
        if b.shape[0] > 0 and not np.issubdtype(b.dtype, np.integer):
            if not np.all(np.equal(np.mod(b, 1), 0)):
                raise ARAPInputError('constraint indices must be integers')
        b = b.astype(np.int64)
        if b.shape[0] > 0 and (b.min() < 0 or b.max() >= n_verts):
            raise ARAPInputError(f'constraint indices must lie in [0, {n_verts}), got [{b.min()}, {b.max()}]')
        if np.unique(b).shape[0] != b.shape[0]:
            raise ARAPInputError('constraint indices must be unique')

        if bc is None:
            if b.shape[0] > 0:
                raise ARAPInputError('constraint positions bc are missing')
            bc = np.zeros((0, dim))
        bc = np.asarray(bc, dtype=np.float64)
        if b.shape[0] == 0 and bc.size == 0:
            bc = bc.reshape(0, dim)
        if bc.shape != (b.shape[0], dim):
            raise ARAPInputError(f'bc must be {(b.shape[0], dim)}, got {bc.shape}')
        return b, bc

    @staticmethod
    def _check_positions(X, name: str, n_verts: int, dim: int):
        if X is None:
            return None
        X = np.asarray(X, dtype=np.float64)
        if X.shape != (n_verts, dim):
            raise ARAPInputError(f'{name} must be {(n_verts, dim)}, got {X.shape}')
        return X

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _expand_rotations(self, R: np.ndarray) -> np.ndarray:
        # distribute group rotations to the regions of each group
        if self.ops.groups is not None:
            return R[self.ops.groups]
        return R

    def _global_solve(self, R_regions: np.ndarray, U_prev: np.ndarray) -> np.ndarray:
        B = self.ops.rhs @ stack_rotations(R_regions)   # [Nv, dim]
        lin = -B + self.lin_const
        if self.prox > 0:
            lin = lin - self.prox * U_prev

        if self.rr_known is None:
            U, self.pre = min_quad_with_fixed(self.A, lin, self.b, self.bc, self.pre)
            return U

        # each axis has its own constraint set
        def solve_axis(c):
            return min_quad_with_fixed(self.A, lin[:, c], self.rr_known[c], self.rr_values[c], self.rr_pre[c])

        if self.config.num_workers > 1:
            with ThreadPoolExecutor(max_workers=min(self.config.num_workers, self.dim)) as executor:
                outs = list(executor.map(solve_axis, range(self.dim)))
        else:
            outs = [solve_axis(c) for c in range(self.dim)]
        self.rr_pre = [pre for _, pre in outs]
        return np.stack([x for x, _ in outs], axis=-1)

    def _energy(self, U: np.ndarray, R_regions: np.ndarray) -> float:
        # sum_t w_t ||e_def_t - R_t e_rest_t||^2, expanded; the rest term tr(V^T (-L) V)
        # uses intrinsic weights and lengths, so it also holds for flattening
        negL = -self.L
        B = self.ops.rhs @ stack_rotations(R_regions)
        quad = np.sum(U * (negL @ U))
        const = np.sum(self.verts * (negL @ self.verts))
        return float(quad - 2. * np.sum(U * B) + const)

    def step(self) -> ARAPState:
        """
        One local/global iteration, a no-op in a terminal state.
        """
        if self.done:
            return self.state

        U_prev = self.U
        U = self.U.copy()
        U[self.b] = self.bc

        try:
            S_flat = self.ops.csm @ U   # [dim*k, dim]
            covariances = unstack_covariances(S_flat, self.dim)
            R = fit_rotations(covariances,
                              allow_flips=self.config.allow_flips,
                              num_workers=self.config.num_workers)
            R_regions = self._expand_rotations(R)
            U_new = self._global_solve(R_regions, U_prev)
        except (SingularSystemError, np.linalg.LinAlgError) as e:
            logger.error(f'ARAP iteration {self.iteration + 1} failed: {e}')
            raise ARAPIterationError(f'ARAP iteration {self.iteration + 1} failed: {e}', self.result()) from e

        self.U = U_new
        self.covariances = covariances
        self.rotations = R
        self.energy = self._energy(U_new, R_regions)
        self.iteration += 1
        self.change = float(np.abs(U_new - U_prev).max())
        logger.debug(f'iteration {self.iteration}: max change {self.change:.3e}, energy {self.energy:.6e}')

        if self.change <= self.config.tol * self.avg_edge:
            self.state = ARAPState.CONVERGED
        elif self.iteration >= self.config.max_iter:
            self.state = ARAPState.MAX_ITERS_REACHED
        return self.state

    def run(self) -> ARAPResult:
        bar = tqdm(total=self.config.max_iter, disable=not self.config.verbose)
        while not self.done:
            self.step()
            bar.update(1)
            bar.set_postfix({'change': self.change, 'energy': self.energy})
        bar.close()

        if self.state == ARAPState.CONVERGED:
            logger.info(f'ARAP converged after {self.iteration} iteration(s)')
        else:
            logger.info(f'ARAP stopped after {self.iteration} iteration(s) without converging '
                        f'(max change {self.change:.3e}, tolerance {self.config.tol * self.avg_edge:.3e})')
        return self.result()

    def result(self) -> ARAPResult:
        return ARAPResult(
            U=self.U.copy(),
            csm=self.ops.csm,
            covariances=None if self.covariances is None else self.covariances.copy(),
            rotations=None if self.rotations is None else self.rotations.copy(),
            iterations=self.iteration,
            converged=self.state == ARAPState.CONVERGED,
            state=self.state,
            energy=self.energy,
        )


def arap(verts: np.ndarray,
         faces: np.ndarray,
         b: Optional[np.ndarray] = None,
         bc: Optional[np.ndarray] = None,
         config: Optional[ARAPConfig] = None,
         U0: Optional[np.ndarray] = None,
         R0: Optional[np.ndarray] = None,
         csm: Optional[sp.spmatrix] = None,
         groups: Optional[np.ndarray] = None,
         fext: Optional[np.ndarray] = None,
         Vm1: Optional[np.ndarray] = None,
         **kwargs) -> ARAPResult:
    """
    As-rigid-as-possible deformation of (verts, faces) with vertices b moved to bc.

    kwargs override fields of `config` (see ARAPConfig), e.g.
        arap(V, F, b, bc, energy='elements', max_iter=50)
    Passing `fext` turns on dynamics.

    out: ARAPResult, `result.csm` can be passed back for the next call on the same mesh
    """
    config = make_arap_config(config, **kwargs)
    if fext is not None and not config.dynamic:
        config = replace(config, dynamic=True)

    solver = ARAPSolver(verts, faces, b, bc, config, U0=U0, R0=R0, csm=csm, groups=groups, fext=fext, Vm1=Vm1)
    return solver.run()
