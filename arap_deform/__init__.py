from .errors import ARAPInputError, SingularSystemError, ARAPIterationError
from .mesh import cotmatrix, massmatrix, arap_loss
from .deform import ARAPConfig, ARAPEnergy, load_arap_config, fit_rotations, build_arap_operators, min_quad_with_fixed, ARAPSolver, ARAPResult, ARAPState, arap
