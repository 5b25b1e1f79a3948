class LtvError(Exception):
    """Base class for every error raised by ltviqc."""


class ConstructionError(LtvError, ValueError):
    """Invalid or missing constructor argument."""


class DimensionError(LtvError, ValueError):
    """Mismatched port sizes or incompatible horizon_periods."""


class StabilityError(LtvError, ValueError):
    """A basis pole, function or realization is not stable."""


class TimeDomainMismatchError(LtvError, ValueError):
    """A discrete-time object was given where continuous-time is expected, or vice versa."""


class UnsupportedFeatureError(LtvError, NotImplementedError):
    pass


class NotFoundError(LtvError, KeyError):
    pass


class InvalidSampleError(LtvError, ValueError):
    """A concrete sample does not satisfy the bounds of its Delta."""
