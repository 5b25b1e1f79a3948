import numbers

import numpy as np

from .errors import ConstructionError, UnsupportedFeatureError
from .horizon_period import HorizonPeriod
from .ulft import Ulft


def generate_reachability_lft(lft, final_time):
    """
    Ulft whose output is the output of `lft` at time `final_time` (0-based)
    and zero at every other time. Signals after `final_time` are cut, so the
    induced gain of the result bounds the energy reachable at that instant.
    """
    if not isinstance(lft, Ulft):
        raise TypeError(f"Expected a Ulft, got {type(lft).__name__}")
    if lft.timestep == 0:
        raise UnsupportedFeatureError("Reachability analysis is only defined in discrete time")
    if not isinstance(final_time, numbers.Integral) or final_time < 0:
        raise ConstructionError(f"final_time must be a non-negative integer, got {final_time!r}")

    horizon, period = lft.horizon_period
    lft = lft.match_horizon_period(HorizonPeriod(max(horizon, final_time + 1), period))
    a, b, c, d = list(lft.a), list(lft.b), list(lft.c), list(lft.d)
    for k in range(lft.horizon_period.total):
        if k != final_time:
            c[k] = np.zeros_like(c[k])
            d[k] = np.zeros_like(d[k])
        if k > final_time:
            a[k] = np.zeros_like(a[k])
            b[k] = np.zeros_like(b[k])
    return lft._replace(a=a, b=b, c=c, d=d)
