import math
from collections import namedtuple
from functools import reduce

import numpy as np

from .errors import DimensionError


class HorizonPeriod(namedtuple('HorizonPeriod', ['horizon', 'period'])):
    """
    Initial transient of `horizon` steps followed by a block of `period`
    steps that repeats forever. Per-step data has length horizon + period.
    """

    __slots__ = ()

    @property
    def total(self):
        return self.horizon + self.period

    def __add__(self, other):
        """Elementwise sum; either increment may be zero."""
        try:
            horizon, period = (int(v) for v in np.asarray(other).reshape(-1))
        except (TypeError, ValueError):
            raise DimensionError(f"Cannot add {other!r} to a horizon_period")
        return as_horizon_period((self.horizon + horizon, self.period + period))


def as_horizon_period(hp):
    if hp is None:
        return HorizonPeriod(0, 1)
    try:
        horizon, period = (int(v) for v in np.asarray(hp).reshape(-1))
    except (TypeError, ValueError):
        raise DimensionError(f"horizon_period must be a pair of integers, got {hp!r}")
    if horizon < 0 or period < 1:
        raise DimensionError(f"horizon_period requires horizon >= 0 and period >= 1, got {hp!r}")
    return HorizonPeriod(horizon, period)


def effective_index(i, hp):
    """Map an absolute (0-based) time step onto its index in a per-step array."""
    horizon, period = hp
    if i < horizon:
        return i
    return horizon + (i - horizon) % period


def common_horizon_period(*hps):
    """Smallest horizon_period every input can be expanded to."""
    hps = [as_horizon_period(hp) for hp in hps]
    if not hps:
        return HorizonPeriod(0, 1)
    horizon = max(hp.horizon for hp in hps)
    period = reduce(lambda x, y: x * y // math.gcd(x, y), (hp.period for hp in hps))
    return HorizonPeriod(horizon, period)


def check_expandable(old, new):
    old, new = as_horizon_period(old), as_horizon_period(new)
    if new.horizon < old.horizon or new.period % old.period:
        raise DimensionError(
            f"Cannot expand horizon_period {list(old)} to {list(new)}: the new horizon must not "
            f"be shorter and the new period must be a multiple of {old.period}")
    return old, new


def expand_sequence(seq, old, new):
    """Re-tile a per-step sequence from horizon_period `old` to `new`."""
    old, new = check_expandable(old, new)
    if len(seq) != old.total:
        raise DimensionError(f"Per-step data has length {len(seq)}, expected {old.total}")
    indices = [effective_index(i, old) for i in range(new.total)]
    if isinstance(seq, np.ndarray):
        return seq[indices]
    return [seq[i] for i in indices]


def per_step(value, hp, name, dtype=float):
    """Broadcast a scalar (or validate a sequence) to one entry per time step."""
    hp = as_horizon_period(hp)
    arr = np.asarray(value, dtype=dtype).reshape(-1)
    if arr.size == 1:
        return np.full(hp.total, arr[0], dtype=dtype)
    if arr.size != hp.total:
        raise DimensionError(
            f"{name} must be a scalar or have {hp.total} entries for horizon_period {list(hp)}, "
            f"got {arr.size}")
    return arr
