from typing import Union
import torch
import numpy as np

def np2th(array: np.ndarray, device: Union[str, torch.device] = 'cpu', dtype: torch.dtype = None) -> torch.Tensor:
    tensor = torch.from_numpy(np.ascontiguousarray(array)).to(device)
    if dtype is not None:
        tensor = tensor.to(dtype)
    return tensor

def th2np(tensor: torch.Tensor) -> np.ndarray:
    return tensor.detach().cpu().numpy()
