from .config import ARAPConfig, ARAPEnergy, load_arap_config
from .rotations import fit_rotations
from .arap_operators import ARAPOperators, build_arap_operators, covariance_scatter_matrix, arap_rhs
from .quad_solver import QuadFactorization, min_quad_with_fixed
from .arap import ARAPSolver, ARAPResult, ARAPState, arap
