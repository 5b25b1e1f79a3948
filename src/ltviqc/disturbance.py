import copy

import numpy as np

from .errors import ConstructionError, DimensionError, UnsupportedFeatureError
from .horizon_period import as_horizon_period, expand_sequence


class Disturbance:
    """
    Structural knowledge about the exogenous input d of a Ulft.

    chan_in holds, for every step, the input channels the disturbance acts on
    (None means all channels).
    """

    _step_attributes = ('chan_in',)

    def __init__(self, name, chan_in=None, horizon_period=None):
        if name is None:
            raise ConstructionError(f"{type(self).__name__} requires a name")
        self.name = name
        self.horizon_period = as_horizon_period(horizon_period)
        total = self.horizon_period.total
        if chan_in is None or (len(chan_in) and np.isscalar(chan_in[0])):
            chans = None if chan_in is None else np.asarray(chan_in, dtype=int)
            self.chan_in = [chans] * total
        else:
            if len(chan_in) != total:
                raise DimensionError(f"chan_in must have {total} entries, got {len(chan_in)}")
            self.chan_in = [None if c is None else np.asarray(c, dtype=int) for c in chan_in]

    def __repr__(self):
        return (f"{type(self).__name__}(name={self.name!r}, "
                f"horizon_period={list(self.horizon_period)})")

    def channels(self, k, num_inputs):
        """Indices of the inputs acted on at step k."""
        chans = self.chan_in[k]
        if chans is None:
            return np.arange(num_inputs)
        if chans.size and (chans.min() < 0 or chans.max() >= num_inputs):
            raise DimensionError(f"Disturbance {self.name} refers to channels outside 0..{num_inputs - 1}")
        return chans

    def match_horizon_period(self, horizon_period):
        new_hp = as_horizon_period(horizon_period)
        new = copy.copy(self)
        for attr in self._step_attributes:
            setattr(new, attr, expand_sequence(getattr(self, attr), self.horizon_period, new_hp))
        new.horizon_period = new_hp
        return new

    def to_multiplier(self, **options):
        raise UnsupportedFeatureError(f"{type(self).__name__} {self.name!r} has no IQC multiplier")


class DisturbanceConstantWindow(Disturbance):
    """
    Inputs that are held constant over a window: for every flagged step t,
    d[t + 1] == d[t]. `window` is either a collection of step indices or a
    boolean array with one entry per step; None flags every step.
    """

    _step_attributes = ('chan_in', 'window')

    def __init__(self, name, chan_in=None, window=None, horizon_period=None):
        super().__init__(name, chan_in, horizon_period)
        total = self.horizon_period.total
        if window is None:
            self.window = np.ones(total, dtype=bool)
            return
        window = np.asarray(list(window) if isinstance(window, (set, frozenset)) else window)
        if window.dtype == bool:
            if window.size != total:
                raise DimensionError(f"A boolean window must have {total} entries, got {window.size}")
            self.window = window.copy()
            return
        steps = window.astype(int).reshape(-1)
        if steps.size and (steps.min() < 0 or steps.max() >= total):
            raise DimensionError(f"window steps must lie in 0..{total - 1} for horizon_period "
                                 f"{list(self.horizon_period)}")
        self.window = np.zeros(total, dtype=bool)
        self.window[steps] = True

    def to_multiplier(self, discrete=True, **options):
        from .multiplier import MultiplierConstantWindow
        return MultiplierConstantWindow(self, discrete=discrete, **options)
