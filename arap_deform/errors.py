class ARAPInputError(ValueError):
    """
    Raised before any computation when mesh, constraints or options are malformed.
    """


class SingularSystemError(RuntimeError):
    """
    Raised when a constrained quadratic has no unique minimizer,
    e.g. a pure Laplacian without any fixed variable.
    """


class ARAPIterationError(RuntimeError):
    """
    Raised when a local/global iteration fails numerically.

    result: the ARAPResult of the last completed iteration
    """
    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
