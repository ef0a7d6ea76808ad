import numpy as np
import torch

from ..deform.arap_operators import get_arap_spokes
from ..deform.config import ARAPEnergy
from ..deform.rotations import fit_rotations_th
from ..misc.tensor_utils import np2th, th2np


def arap_loss(verts: torch.Tensor,
              verts_rest: torch.Tensor,
              faces: torch.Tensor,
              energy = ARAPEnergy.SPOKES,
              rotations: torch.Tensor = None,
              return_rotations: bool = False):
    """
    ARAP energy of a single mesh, differentiable w.r.t. verts.

    E = sum_t w_t || R_t (p0_src - p0_dst) - (p_src - p_dst) ||^2
    with the regions and weights of `get_arap_spokes`, so that it matches
    ARAPResult.energy of the local/global solver.

    Args:
      verts:      [Nv,dim] deformed
      verts_rest: [Nv,dim] rest/reference
      faces:      [Nf,3|4] long
      energy:     'spokes', 'elements' or 'spokes-and-rims'
      rotations:  [k,dim,dim] fixed rotations, fitted to verts (no grad) if None
    Returns:
      loss: scalar tensor
      (optional) R: [k,dim,dim] per-region rotations
    """
    device, dtype = verts.device, verts.dtype
    dim = verts.shape[-1]

    spokes = get_arap_spokes(th2np(verts_rest).astype(np.float64), th2np(faces).astype(np.int64), energy)
    src = np2th(spokes.src, device)
    dst = np2th(spokes.dst, device)
    region = np2th(spokes.region, device)
    w = np2th(spokes.weight, device, dtype)   # [m]

    # Edge vectors in rest and deformed
    e0 = verts_rest[src] - verts_rest[dst]    # [m,dim]
    e  = verts[src]      - verts[dst]         # [m,dim]

    if rotations is None:
        # Per-region covariance A_r = sum_t w_t * (e0_t) (e_t)^T
        outer = (e0[:, :, None] * e[:, None, :]) * w[:, None, None]  # [m,dim,dim]
        A = torch.zeros((spokes.n_regions, dim * dim), device=device, dtype=dtype)
        A.index_add_(0, region, outer.detach().reshape(-1, dim * dim))
        R = fit_rotations_th(A.view(spokes.n_regions, dim, dim))
    else:
        assert rotations.shape == (spokes.n_regions, dim, dim)
        R = rotations.to(device=device, dtype=dtype)

    Re0 = (R[region] @ e0[:, :, None]).squeeze(-1)           # [m,dim]
    diff = Re0 - e
    loss = (w * (diff * diff).sum(dim=-1)).sum()

    return (loss, R) if return_rotations else loss
