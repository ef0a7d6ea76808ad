import torch
from typing import Optional, Tuple

def sample_farthest_points(
    points: torch.Tensor,
    K: int,
    start_idx: Optional[int] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Modifed from pytorch3d.ops.sample_farthest_points, deterministic and for a single cloud

    points: [Np, D]
    K: number of samples
    start_idx: first sample, defaults to the point farthest from the centroid

    out:
    - sampled_points: [K, D]
    - sample_idx: [K], int64
    """
    assert len(points.shape) == 2

    Np, D = points.shape
    device = points.device

    assert 0 < K <= Np

    if start_idx is None:
        centroid = points.mean(dim=0, keepdim=True)
        start_idx = torch.argmax(((points - centroid)**2).sum(-1)).item()

    sample_idx = torch.full(
        (K,),
        fill_value=-1,
        dtype=torch.int64,
        device=device,
    )
    closest_dists = points.new_full(
        (Np,),
        float("inf"),
    )
    selected_idx = start_idx
    sample_idx[0] = selected_idx

    for i in range(1, K):
        dist = points[selected_idx, :] - points[:, :]
        dist_to_last_selected = (dist**2).sum(-1)  # (P)

        closest_dists = torch.min(dist_to_last_selected, closest_dists)  # (P)

        selected_idx = torch.argmax(closest_dists)
        sample_idx[i] = selected_idx

    # Gather the points
    sampled_points = points[sample_idx]

    return sampled_points, sample_idx
