"""
Exception types for the planartrack package.

Alignment failures of a single marker are not exceptions: the tracker
returns a failed step result instead. The classes below cover the
failures that stop an operation or a single robust fit.
"""


class TrackerError(Exception):
    """Base class for all planartrack errors."""


class ConfigurationError(TrackerError, ValueError):
    """A precondition of the requested operation is not met."""


class TrackingBusyError(TrackerError):
    """A tracking session is already running on this scheduler."""


class RobustFitError(TrackerError):
    """
    A robust model fit did not produce a model.

    Attributes:
        code: The ProsacReturnCode reported by the estimator
        min_samples: Minimal sample count of the model kernel
    """

    def __init__(self, message: str, code=None, min_samples: int = 0):
        super().__init__(message)
        self.code = code
        self.min_samples = min_samples


class NoModelFoundError(RobustFitError):
    """No consistent model for the given correspondences."""


class NotEnoughPointsError(RobustFitError):
    """Fewer correspondences than the model's minimal sample count."""


class MaxIterationsFromProportionError(RobustFitError):
    """Iteration bound derived from the inlier proportion was reached."""


class MaxIterationsParamError(RobustFitError):
    """The configured maximum number of iterations was reached."""


class SolveError(TrackerError):
    """Every keyframe of a solve request failed; nothing was written."""
