from typing import Union
from concurrent.futures import ThreadPoolExecutor
import numpy as np
import torch


def fit_rotations(S: Union[np.ndarray, torch.Tensor],
                  allow_flips: bool = False,
                  return_singular_values: bool = False,
                  num_workers: int = 1,
                  eps: float = 1e-12):
    """
    Closest rotation to each covariance matrix.

    S: [k, d, d], S[r] = sum_ij w_ij * e_rest_ij @ e_def_ij^T

    For S[r] = U @ diag(s) @ Vh the fitted rotation is R[r] = Vh^T @ U^T. Unless
    `allow_flips`, a reflection (det < 0) is turned into a rotation by negating the
    column of U that belongs to the smallest singular value. Blocks whose singular
    values are all below `eps` (zero covariance) get the identity.

    out:
    - R: [k, d, d], same type as S
    - (optional) SS: [k, d, d], diagonal matrices of singular values
    """
    if isinstance(S, np.ndarray):
        return fit_rotations_np(S, allow_flips, return_singular_values, num_workers, eps)
    elif isinstance(S, torch.Tensor):
        return fit_rotations_th(S, allow_flips, return_singular_values, eps)
    else:
        raise NotImplementedError(f'function not implemented for {type(S)}')


def _fit_rotations_block_np(S: np.ndarray, allow_flips: bool, eps: float):
    U, s, Vh = np.linalg.svd(S)     # U: [k, d, d], s: [k, d], Vh: [k, d, d]
    R = np.swapaxes(U @ Vh, -1, -2)

    if not allow_flips:
        mask = np.linalg.det(R) < 0
        if mask.any():
            U_fix = U[mask]
            U_fix[..., :, -1] *= -1.
            R[mask] = np.swapaxes(U_fix @ Vh[mask], -1, -2)

    degenerate = s.max(axis=-1) <= eps
    if degenerate.any():
        R[degenerate] = np.eye(S.shape[-1])

    return R, s


def fit_rotations_np(S: np.ndarray,
                     allow_flips: bool = False,
                     return_singular_values: bool = False,
                     num_workers: int = 1,
                     eps: float = 1e-12):
    assert len(S.shape) == 3
    assert S.shape[1] == S.shape[2]
    k, d, _ = S.shape

    if num_workers is not None and num_workers > 1 and k > num_workers:
        chunks = np.array_split(np.arange(k), num_workers)
        with ThreadPoolExecutor(max_workers=num_workers) as executor:
            outs = list(executor.map(lambda idx: _fit_rotations_block_np(S[idx], allow_flips, eps), chunks))
        R = np.concatenate([out[0] for out in outs], axis=0)
        s = np.concatenate([out[1] for out in outs], axis=0)
    else:
        R, s = _fit_rotations_block_np(S, allow_flips, eps)

    if return_singular_values:
        SS = s[..., :, None] * np.eye(d)    # [k, d, d]
        return R, SS
    return R


def fit_rotations_th(S: torch.Tensor,
                     allow_flips: bool = False,
                     return_singular_values: bool = False,
                     eps: float = 1e-12):
    assert len(S.shape) == 3
    assert S.shape[1] == S.shape[2]
    d = S.shape[-1]

    with torch.no_grad():
        U, s, Vh = torch.linalg.svd(S)  # U:[k,d,d], Vh:[k,d,d]
        R = (U @ Vh).transpose(-1, -2)

        # Fix improper rotations (reflection) by flipping last column of U when det<0
        if not allow_flips:
            mask = torch.linalg.det(R) < 0
            if mask.any():
                U_fix = U.clone()
                U_fix[mask, :, -1] *= -1.0
                R = (U_fix @ Vh).transpose(-1, -2)

        degenerate = s.max(dim=-1).values <= eps
        if degenerate.any():
            R[degenerate] = torch.eye(d, dtype=R.dtype, device=R.device)

    if return_singular_values:
        return R, torch.diag_embed(s)
    return R
