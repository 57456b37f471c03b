"""Exceptions and warnings raised by the sampler."""


class ConfigValidationError(ValueError):
    """A hyperparameter lies outside its valid domain."""


class AssignmentReferenceError(LookupError):
    """An assignment names a neuron outside [0, N) or an event that is not live."""


class NumericDegeneracyError(ArithmeticError):
    """A resampled variance collapsed or the log-likelihood became non-finite."""


class ConvergenceWarning(UserWarning):
    """Split-merge moves have not been accepted for a configurable number of sweeps."""
