from .tensor_utils import np2th, th2np
