import logging
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu, SuperLU

from ..errors import SingularSystemError

logger = logging.getLogger(__name__)


@dataclass
class QuadFactorization:
    """
    Precomputed elimination of the fixed variables of a quadratic,
    valid as long as A and the fixed index set stay the same.
    """
    n: int
    known: np.ndarray       # [Nk]
    unknown: np.ndarray     # [Nu]
    A_uk: sp.csr_matrix     # [Nu, Nk]
    lu: Optional[SuperLU]   # factorization of A_uu, None if every variable is fixed

    def matches(self, n: int, known: np.ndarray) -> bool:
        return self.n == n and np.array_equal(self.known, known)

    def solve(self, B: np.ndarray, Y: np.ndarray) -> np.ndarray:
        """
        B: [n] or [n, c], linear term
        Y: [Nk] or [Nk, c], fixed values

        out: X [n] or [n, c]
        """
        X = np.zeros(B.shape, dtype=np.float64)
        X[self.known] = Y
        if self.lu is not None:
            rhs = -(B[self.unknown] + self.A_uk @ Y)
            X[self.unknown] = self.lu.solve(np.ascontiguousarray(rhs))
        return X


def _has_constant_null_space(A: sp.spmatrix, rtol: float = 1e-10) -> bool:
    row_sums = np.abs(A @ np.ones(A.shape[0]))
    scale = np.abs(A.diagonal()).max(initial=0.)
    return scale == 0. or row_sums.max(initial=0.) <= rtol * scale


def precompute_quad_with_fixed(A: sp.spmatrix, known: np.ndarray) -> QuadFactorization:
    """
    A: [n, n], symmetric, positive definite on the unknowns
    known: [Nk], indices of fixed variables
    """
    A = sp.csr_matrix(A)
    n = A.shape[0]
    assert A.shape == (n, n)

    known = np.asarray(known, dtype=np.int64).reshape(-1)
    unknown_mask = np.ones(n, dtype=bool)
    unknown_mask[known] = False
    unknown = np.nonzero(unknown_mask)[0]

    if known.shape[0] == 0 and _has_constant_null_space(A):
        raise SingularSystemError('system matrix is singular (constant null space) and no variable is fixed, '
                                  'add fixed variables or a regularization term')

    A_uk = A[unknown][:, known].tocsr()
    lu = None
    if unknown.shape[0] > 0:
        A_uu = A[unknown][:, unknown].tocsc()
        try:
            lu = splu(A_uu)
        except RuntimeError as e:
            raise SingularSystemError(f'factorization of the free block failed: {e}') from e
    logger.debug(f'factorized quadratic with {unknown.shape[0]} free and {known.shape[0]} fixed variables')

    return QuadFactorization(n, known, unknown, A_uk, lu)


def min_quad_with_fixed(A: sp.spmatrix,
                        B: np.ndarray,
                        known: np.ndarray,
                        Y: np.ndarray,
                        pre: Optional[QuadFactorization] = None) -> Tuple[np.ndarray, QuadFactorization]:
    """
    Solve  min_X 0.5 * X^T A X + X^T B   s.t.  X[known] = Y,
    i.e.   A_uu X_u = -(B_u + A_uk Y)  on the free variables u.

    A: [n, n], sparse, symmetric
    B: [n] or [n, c]
    known: [Nk]
    Y: [Nk] or [Nk, c]
    pre: factorization returned by a previous call with the same A and known,
         it is recomputed if known differs

    out:
    - X: [n] or [n, c]
    - pre: factorization to pass to the next call
    """
    n = A.shape[0]
    known = np.asarray(known, dtype=np.int64).reshape(-1)
    B = np.asarray(B, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    assert B.shape[0] == n
    if B.ndim == 2 and Y.ndim == 1 and known.shape[0] == 0:
        Y = Y.reshape(0, B.shape[1])
    assert Y.shape[0] == known.shape[0]

    if pre is None or not pre.matches(n, known):
        if pre is not None:
            logger.debug('fixed variables changed, refactorizing')
        pre = precompute_quad_with_fixed(A, known)

    X = pre.solve(B, Y)
    if not np.all(np.isfinite(X)):
        raise SingularSystemError('solution of the constrained quadratic is not finite')
    return X, pre
