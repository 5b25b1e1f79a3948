import copy
from abc import ABC, abstractmethod

import numpy as np
import control as ctrl

from .errors import (ConstructionError, DimensionError, InvalidSampleError,
                     TimeDomainMismatchError, UnsupportedFeatureError)
from .horizon_period import as_horizon_period, effective_index, expand_sequence, per_step
from .utils import hinf_norm, timestep_to_dt


def _dimensions(value, hp, label, allow_zero=False):
    dims = per_step(value, hp, label, dtype=int)
    if np.any(dims < (0 if allow_zero else 1)):
        raise ConstructionError(f"{label} must be {'non-negative' if allow_zero else 'positive'}, got {dims}")
    return dims


def _bounds(lower, upper, hp):
    lower = per_step(lower, hp, 'lower_bound')
    upper = per_step(upper, hp, 'upper_bound')
    if np.any(lower > upper):
        raise ConstructionError("lower_bound must not exceed upper_bound")
    return lower, upper


def _rng(rng):
    return rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)


def _static_sample(values, hp, timestep):
    from .ulft import Ulft
    return Ulft.from_matrix([np.atleast_2d(v) for v in values], horizon_period=hp, timestep=timestep)


def _static_gains(sample, delta):
    """Per-step gain matrices of a memoryless sample, checked against the Delta's port sizes."""
    from .ulft import Ulft
    if not isinstance(sample, Ulft):
        raise InvalidSampleError(f"A sample of {delta.name} must be a Ulft")
    if sample.delta:
        raise InvalidSampleError(f"A sample of {type(delta).__name__} {delta.name} must be memoryless")
    sample = sample.match_horizon_period(delta.horizon_period)
    for k, gain in enumerate(sample.d):
        if gain.shape != (delta.dim_out[k], delta.dim_in[k]):
            raise InvalidSampleError(
                f"Sample of {delta.name} has size {gain.shape} at step {k}, expected "
                f"{(delta.dim_out[k], delta.dim_in[k])}")
    return sample.d


class Delta(ABC):
    """
    Uncertainty block w = Delta(z) in feedback with the known part of a Ulft.

    Every per-step attribute listed in `_step_attributes` has one entry per
    time step of `horizon_period`.
    """

    is_state = False
    _step_attributes = ('dim_out', 'dim_in')

    def __init__(self, name, dim_out=1, dim_in=None, horizon_period=None):
        if name is None:
            raise ConstructionError(f"{type(self).__name__} requires a name")
        if not isinstance(name, str) or not name:
            raise ConstructionError(f"{type(self).__name__} name must be a non-empty string, got {name!r}")
        self.name = name
        self.horizon_period = as_horizon_period(horizon_period)
        self.dim_out = _dimensions(dim_out, self.horizon_period, 'dim_out', self.is_state)
        self.dim_in = _dimensions(dim_out if dim_in is None else dim_in, self.horizon_period,
                                  'dim_in', self.is_state)

    def __repr__(self):
        fields = ', '.join(f"{attr}={getattr(self, attr).tolist()}" for attr in self._step_attributes)
        return (f"{type(self).__name__}(name={self.name!r}, {fields}, "
                f"horizon_period={list(self.horizon_period)})")

    def _parameters(self):
        return [getattr(self, attr) for attr in self._step_attributes if attr not in ('dim_out', 'dim_in')]

    def __eq__(self, other):
        if type(self) is not type(other) or self.name != other.name:
            return NotImplemented if not isinstance(other, Delta) else False
        if self.horizon_period != other.horizon_period:
            return False
        return all(np.array_equal(getattr(self, a), getattr(other, a)) for a in self._step_attributes)

    __hash__ = object.__hash__

    def match_horizon_period(self, horizon_period):
        """Same Delta, with its per-step data re-expanded to a refined horizon_period."""
        new_hp = as_horizon_period(horizon_period)
        new = copy.copy(self)
        for attr in self._step_attributes:
            setattr(new, attr, expand_sequence(getattr(self, attr), self.horizon_period, new_hp))
        new.horizon_period = new_hp
        return new

    def merge(self, other):
        """Combine two occurrences of the same block into one block of summed dimensions."""
        if type(self) is not type(other) or self.name != other.name:
            raise ConstructionError(f"Cannot merge {self!r} with {other!r}")
        if self.horizon_period != other.horizon_period:
            raise DimensionError(f"Cannot merge Deltas named {self.name} with different horizon_periods")
        for mine, theirs in zip(self._parameters(), other._parameters()):
            if not np.array_equal(mine, theirs):
                raise ConstructionError(
                    f"Deltas named {self.name} appear twice with different parameters")
        new = copy.copy(self)
        new.dim_out = self.dim_out + other.dim_out
        new.dim_in = self.dim_in + other.dim_in
        return new

    def to_lft(self, timestep=-1):
        from .ulft import Ulft
        total = self.horizon_period.total
        return Ulft([np.zeros((self.dim_in[k], self.dim_out[k])) for k in range(total)],
                    [np.eye(self.dim_in[k]) for k in range(total)],
                    [np.eye(self.dim_out[k]) for k in range(total)],
                    [np.zeros((self.dim_out[k], self.dim_in[k])) for k in range(total)],
                    delta=[self], horizon_period=self.horizon_period, timestep=timestep)

    # algebra is delegated to the Ulft of the block
    def __add__(self, other):
        return self.to_lft() + other

    def __radd__(self, other):
        return other + self.to_lft()

    def __sub__(self, other):
        return self.to_lft() - other

    def __rsub__(self, other):
        return other - self.to_lft()

    def __mul__(self, other):
        return self.to_lft() * other

    def __rmul__(self, other):
        return other * self.to_lft()

    def __neg__(self):
        return -self.to_lft()

    __array_ufunc__ = None

    @abstractmethod
    def sample(self, timestep=-1, rng=None):
        """Random concrete Ulft satisfying the Delta's bounds."""

    @abstractmethod
    def validate_sample(self, sample, timestep=-1):
        """Raise InvalidSampleError unless `sample` satisfies the Delta's bounds at every step."""

    def to_multiplier(self, **options):
        raise UnsupportedFeatureError(f"{type(self).__name__} has no IQC multiplier")


class DeltaDelayZ(Delta):
    """Discrete-time state: w[k] = z[k - 1]. dim_out[k] is the state size at step k."""

    is_state = True

    def __init__(self, dim=1, timestep=-1, horizon_period=None, name='z'):
        if timestep == 0:
            raise TimeDomainMismatchError("DeltaDelayZ requires a discrete timestep")
        hp = as_horizon_period(horizon_period)
        dim_out = _dimensions(dim, hp, 'dim', allow_zero=True)
        dim_in = np.array([dim_out[effective_index(k + 1, hp)] for k in range(hp.total)])
        super().__init__(name, dim_out, dim_in, hp)
        self.timestep = timestep

    def to_lft(self, timestep=None):
        return super().to_lft(self.timestep)

    def sample(self, timestep=-1, rng=None):
        return self.to_lft(timestep)

    def validate_sample(self, sample, timestep=-1):
        if not any(isinstance(d, DeltaDelayZ) for d in sample.delta):
            raise InvalidSampleError("A sample of DeltaDelayZ must contain a delay")


class DeltaIntegrator(Delta):
    """Continuous-time state: w = (1/s) z."""

    is_state = True

    def __init__(self, dim=1, horizon_period=None, name='1/s'):
        hp = as_horizon_period(horizon_period)
        if hp != (0, 1):
            raise UnsupportedFeatureError("DeltaIntegrator is only defined for horizon_period [0, 1]")
        super().__init__(name, dim, dim, hp)

    def match_horizon_period(self, horizon_period):
        if as_horizon_period(horizon_period) != (0, 1):
            raise UnsupportedFeatureError("Continuous-time LFTs cannot be time-varying")
        return self

    def to_lft(self, timestep=0):
        return super().to_lft(timestep=0)

    def sample(self, timestep=0, rng=None):
        return self.to_lft()

    def validate_sample(self, sample, timestep=0):
        if not any(isinstance(d, DeltaIntegrator) for d in sample.delta):
            raise InvalidSampleError("A sample of DeltaIntegrator must contain an integrator")


class DeltaSlti(Delta):
    """Static, linear, time-invariant real parameter repeated dim_outin times."""

    _step_attributes = ('dim_out', 'dim_in', 'lower_bound', 'upper_bound')

    def __init__(self, name=None, dim_outin=1, lower_bound=-1, upper_bound=1, horizon_period=None):
        super().__init__(name, dim_outin, dim_outin, horizon_period)
        self.lower_bound, self.upper_bound = _bounds(lower_bound, upper_bound, self.horizon_period)
        if np.ptp(self.lower_bound) or np.ptp(self.upper_bound) or np.ptp(self.dim_out):
            raise ConstructionError(f"{type(self).__name__} {self.name} must be time-invariant")

    def sample(self, timestep=-1, rng=None):
        value = _rng(rng).uniform(self.lower_bound[0], self.upper_bound[0])
        return _static_sample([value * np.eye(n) for n in self.dim_out], self.horizon_period, timestep)

    def validate_sample(self, sample, timestep=-1):
        gains = _static_gains(sample, self)
        value = gains[0][0, 0] if gains[0].size else 0.0
        for k, gain in enumerate(gains):
            if not np.allclose(gain, value * np.eye(self.dim_out[k])):
                raise InvalidSampleError(f"Sample of {self.name} is not a constant multiple of identity")
        if not self.lower_bound[0] <= value <= self.upper_bound[0]:
            raise InvalidSampleError(f"Sample {value} of {self.name} is outside its bounds")

    def to_multiplier(self, **options):
        from .multiplier import MultiplierSlti
        return MultiplierSlti(self, **options)


class DeltaSltv(Delta):
    """Static, linear, arbitrarily fast time-varying real parameter."""

    _step_attributes = ('dim_out', 'dim_in', 'lower_bound', 'upper_bound')

    def __init__(self, name=None, dim_outin=1, lower_bound=-1, upper_bound=1, horizon_period=None):
        super().__init__(name, dim_outin, dim_outin, horizon_period)
        self.lower_bound, self.upper_bound = _bounds(lower_bound, upper_bound, self.horizon_period)

    def _sample_values(self, rng):
        return rng.uniform(self.lower_bound, self.upper_bound)

    def sample(self, timestep=-1, rng=None):
        values = self._sample_values(_rng(rng))
        return _static_sample([v * np.eye(n) for v, n in zip(values, self.dim_out)],
                              self.horizon_period, timestep)

    def _values(self, sample):
        gains = _static_gains(sample, self)
        values = np.array([g[0, 0] if g.size else 0.0 for g in gains])
        for k, (gain, value) in enumerate(zip(gains, values)):
            if not np.allclose(gain, value * np.eye(self.dim_out[k])):
                raise InvalidSampleError(f"Sample of {self.name} at step {k} is not a multiple of identity")
            if not self.lower_bound[k] <= value <= self.upper_bound[k]:
                raise InvalidSampleError(f"Sample {value} of {self.name} at step {k} is outside its bounds")
        return values

    def validate_sample(self, sample, timestep=-1):
        self._values(sample)

    def to_multiplier(self, **options):
        from .multiplier import MultiplierSltv
        return MultiplierSltv(self, **options)


class DeltaSltvRateBnd(DeltaSltv):
    """Static time-varying parameter whose step-to-step change is at most rate_bound."""

    _step_attributes = ('dim_out', 'dim_in', 'lower_bound', 'upper_bound', 'rate_bound')

    def __init__(self, name=None, dim_outin=1, lower_bound=-1, upper_bound=1, rate_bound=1,
                 horizon_period=None):
        super().__init__(name, dim_outin, lower_bound, upper_bound, horizon_period)
        self.rate_bound = per_step(rate_bound, self.horizon_period, 'rate_bound')
        if np.any(self.rate_bound < 0):
            raise ConstructionError("rate_bound must be non-negative")

    def _next_steps(self):
        hp = self.horizon_period
        return [effective_index(k + 1, hp) for k in range(hp.total)]

    def _sample_values(self, rng):
        values = np.empty(self.horizon_period.total)
        values[0] = rng.uniform(self.lower_bound[0], self.upper_bound[0])
        for k in range(1, values.size):
            step = rng.uniform(-self.rate_bound[k - 1], self.rate_bound[k - 1])
            values[k] = np.clip(values[k - 1] + step, self.lower_bound[k], self.upper_bound[k])
        horizon = self.horizon_period.horizon
        if abs(values[-1] - values[horizon]) > self.rate_bound[-1]:
            # closing the period must respect the rate bound as well
            values[horizon:] = np.clip(values[horizon - 1] if horizon else values[horizon],
                                       self.lower_bound[horizon:], self.upper_bound[horizon:])
        return values

    def validate_sample(self, sample, timestep=-1):
        values = self._values(sample)
        for k, nxt in enumerate(self._next_steps()):
            if abs(values[nxt] - values[k]) > self.rate_bound[k] + 1e-12:
                raise InvalidSampleError(f"Sample of {self.name} violates its rate bound at step {k}")

    def to_multiplier(self, **options):
        from .multiplier import MultiplierSltvRateBnd
        return MultiplierSltvRateBnd(self, **options)


class DeltaDlti(Delta):
    """Dynamic, linear, time-invariant block with H-infinity norm at most upper_bound."""

    _step_attributes = ('dim_out', 'dim_in', 'upper_bound')

    def __init__(self, name=None, dim_out=1, dim_in=None, upper_bound=1, horizon_period=None):
        super().__init__(name, dim_out, dim_in, horizon_period)
        self.upper_bound = per_step(upper_bound, self.horizon_period, 'upper_bound')
        if np.any(self.upper_bound < 0):
            raise ConstructionError("upper_bound must be non-negative")
        if np.ptp(self.upper_bound) or np.ptp(self.dim_out) or np.ptp(self.dim_in):
            raise ConstructionError(f"DeltaDlti {self.name} must be time-invariant")

    def sample(self, timestep=-1, rng=None):
        from .ulft import Ulft
        rng = _rng(rng)
        states = int(rng.integers(1, 4))
        dt = timestep_to_dt(timestep)
        A = rng.standard_normal((states, states))
        if dt == 0:
            A = A - (np.max(np.linalg.eigvals(A).real) + rng.uniform(0.1, 1.0)) * np.eye(states)
        else:
            A = A * rng.uniform(0.1, 0.9) / max(np.max(np.abs(np.linalg.eigvals(A))), 1e-9)
        sys = ctrl.ss(A, rng.standard_normal((states, self.dim_in[0])),
                      rng.standard_normal((self.dim_out[0], states)),
                      rng.standard_normal((self.dim_out[0], self.dim_in[0])), dt=dt)
        scale = self.upper_bound[0] * rng.uniform(0.1, 1.0) / max(hinf_norm(sys), 1e-12)
        A, B, C, D = ctrl.ssdata(sys)
        sys = ctrl.ss(A, B, scale * C, scale * D, dt=dt)
        return Ulft.from_ss(sys).match_horizon_period(self.horizon_period)

    def validate_sample(self, sample, timestep=-1):
        sys = sample.to_ss()
        if sys.noutputs != self.dim_out[0] or sys.ninputs != self.dim_in[0]:
            raise InvalidSampleError(f"Sample of {self.name} has the wrong size")
        if hinf_norm(sys) > self.upper_bound[0] * (1 + 1e-6):
            raise InvalidSampleError(f"Sample of {self.name} exceeds its norm bound")

    def to_multiplier(self, **options):
        from .multiplier import MultiplierDlti
        return MultiplierDlti(self, **options)


class DeltaBounded(Delta):
    """
    Norm-bounded operator, possibly nonlinear and time-varying:
    sum |w[k]|^2 <= sum upper_bound[k]^2 |z[k]|^2.
    """

    _step_attributes = ('dim_out', 'dim_in', 'upper_bound')

    def __init__(self, name=None, dim_out=1, dim_in=None, upper_bound=1, horizon_period=None):
        super().__init__(name, dim_out, dim_in, horizon_period)
        self.upper_bound = per_step(upper_bound, self.horizon_period, 'upper_bound')
        if np.any(self.upper_bound < 0):
            raise ConstructionError("upper_bound must be non-negative")

    def sample(self, timestep=-1, rng=None):
        rng = _rng(rng)
        gains = []
        for k in range(self.horizon_period.total):
            gain = rng.standard_normal((self.dim_out[k], self.dim_in[k]))
            gains.append(gain * self.upper_bound[k] * rng.uniform(0, 1) / max(np.linalg.norm(gain, 2), 1e-12))
        return _static_sample(gains, self.horizon_period, timestep)

    def validate_sample(self, sample, timestep=-1):
        if sample.delta:
            if self.horizon_period != (0, 1):
                raise InvalidSampleError("Dynamic samples are only checked for horizon_period [0, 1]")
            if hinf_norm(sample.to_ss()) > self.upper_bound[0] * (1 + 1e-6):
                raise InvalidSampleError(f"Sample of {self.name} exceeds its norm bound")
            return
        for k, gain in enumerate(_static_gains(sample, self)):
            if np.linalg.norm(gain, 2) > self.upper_bound[k] * (1 + 1e-9):
                raise InvalidSampleError(f"Sample of {self.name} exceeds its norm bound at step {k}")

    def to_multiplier(self, **options):
        from .multiplier import MultiplierBounded
        return MultiplierBounded(self, **options)


class DeltaSectorBounded(Delta):
    """Memoryless nonlinearity acting channel-wise, w_i in sector [lower_bound, upper_bound] of z_i."""

    _step_attributes = ('dim_out', 'dim_in', 'lower_bound', 'upper_bound')

    def __init__(self, name=None, dim_outin=1, lower_bound=0, upper_bound=1, horizon_period=None):
        super().__init__(name, dim_outin, dim_outin, horizon_period)
        self.lower_bound, self.upper_bound = _bounds(lower_bound, upper_bound, self.horizon_period)

    def sample(self, timestep=-1, rng=None):
        rng = _rng(rng)
        gains = [np.diag(rng.uniform(self.lower_bound[k], self.upper_bound[k], self.dim_out[k]))
                 for k in range(self.horizon_period.total)]
        return _static_sample(gains, self.horizon_period, timestep)

    def validate_sample(self, sample, timestep=-1):
        for k, gain in enumerate(_static_gains(sample, self)):
            if not np.allclose(gain, np.diag(np.diag(gain))):
                raise InvalidSampleError(f"Sample of {self.name} couples channels at step {k}")
            slopes = np.diag(gain)
            if np.any(slopes < self.lower_bound[k]) or np.any(slopes > self.upper_bound[k]):
                raise InvalidSampleError(f"Sample of {self.name} leaves its sector at step {k}")

    def to_multiplier(self, **options):
        from .multiplier import MultiplierSectorBounded
        return MultiplierSectorBounded(self, **options)


class DeltaConstantDelay(Delta):
    """Constant, unknown integer delay w[k] = z[k - tau], 0 <= tau <= delay_max."""

    _step_attributes = ('dim_out', 'dim_in', 'delay_max')

    def __init__(self, name=None, dim_outin=1, delay_max=1, horizon_period=None):
        super().__init__(name, dim_outin, dim_outin, horizon_period)
        self.delay_max = per_step(delay_max, self.horizon_period, 'delay_max', dtype=int)
        if np.any(self.delay_max < 0):
            raise ConstructionError("delay_max must be non-negative")
        if np.ptp(self.dim_out):
            raise ConstructionError(f"DeltaConstantDelay {self.name} must have a constant dimension")

    def sample(self, timestep=-1, rng=None):
        from .ulft import Ulft
        if timestep == 0:
            raise UnsupportedFeatureError("DeltaConstantDelay can only be sampled in discrete time")
        n = self.dim_out[0]
        tau = int(_rng(rng).integers(0, np.min(self.delay_max) + 1))
        if tau == 0:
            return _static_sample([np.eye(n)] * self.horizon_period.total, self.horizon_period, timestep)
        A = np.kron(np.eye(tau, k=-1), np.eye(n))
        B = np.kron(np.eye(tau, 1), np.eye(n))
        C = np.kron(np.eye(1, tau, tau - 1), np.eye(n))
        sys = ctrl.ss(A, B, C, np.zeros((n, n)), dt=timestep_to_dt(timestep))
        return Ulft.from_ss(sys).match_horizon_period(self.horizon_period)

    def validate_sample(self, sample, timestep=-1):
        n = self.dim_out[0]
        if not sample.delta:
            gains = _static_gains(sample, self)
            if not all(np.allclose(g, np.eye(n)) for g in gains):
                raise InvalidSampleError(f"A memoryless sample of {self.name} must be the identity")
            return
        A, B, C, D = ctrl.ssdata(sample.to_ss())
        markov = [D] + [C @ np.linalg.matrix_power(A, i) @ B for i in range(np.max(self.delay_max) + A.shape[0])]
        taus = [i for i, m in enumerate(markov) if not np.allclose(m, 0)]
        if len(taus) != 1 or not np.allclose(markov[taus[0]], np.eye(n)) or taus[0] > np.min(self.delay_max):
            raise InvalidSampleError(f"Sample of {self.name} is not a delay of at most {np.min(self.delay_max)} steps")

    def to_multiplier(self, **options):
        from .multiplier import MultiplierConstantDelay
        return MultiplierConstantDelay(self, **options)
