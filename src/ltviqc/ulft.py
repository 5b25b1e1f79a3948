import numbers
from functools import reduce

import numpy as np
import control as ctrl
from scipy import linalg

from .delta import Delta, DeltaDelayZ, DeltaIntegrator
from .disturbance import Disturbance
from .errors import (ConstructionError, DimensionError, NotFoundError,
                     TimeDomainMismatchError, UnsupportedFeatureError)
from .horizon_period import as_horizon_period, common_horizon_period, effective_index, expand_sequence
from .utils import dt_to_timestep, timestep_to_dt


def _per_step_matrices(value, total, label, per_step=True):
    if per_step and isinstance(value, (list, tuple)):
        if len(value) != total:
            raise DimensionError(f"{label} must have {total} entries, got {len(value)}")
        return [np.atleast_2d(np.asarray(v, dtype=float)) for v in value]
    return [np.atleast_2d(np.asarray(value, dtype=float))] * total


def _offsets(dims):
    return np.concatenate([[0], np.cumsum(dims)]).astype(int)


class Ulft:
    """
    Uncertain linear fractional transformation

        [z]   [a  b] [w]
        [y] = [c  d] [u],     w = Delta(z)

    with one (a, b, c, d) per time step of `horizon_period`. The input z of
    the Delta blocks stacks the rows of a/b in the order of `delta`, their
    output w stacks the columns of a/c.

    Lists and tuples of matrices are read as one entry per step only when
    `horizon_period` is given; otherwise a list is a single matrix.

    timestep: 0 continuous time, -1 discrete with unspecified sample time,
    > 0 sample time.
    """

    __array_ufunc__ = None

    def __init__(self, a, b, c, d, delta=(), horizon_period=None, disturbance=(), timestep=-1):
        hp = as_horizon_period(horizon_period)
        total = hp.total
        per_step = horizon_period is not None
        self.horizon_period = hp
        self.timestep = timestep
        self.a = _per_step_matrices(a, total, 'a', per_step)
        self.b = _per_step_matrices(b, total, 'b', per_step)
        self.c = _per_step_matrices(c, total, 'c', per_step)
        self.d = _per_step_matrices(d, total, 'd', per_step)

        if isinstance(delta, Delta):
            delta = [delta]
        if isinstance(disturbance, Disturbance):
            disturbance = [disturbance]
        self.delta = tuple(dlt if dlt.horizon_period == hp else dlt.match_horizon_period(hp) for dlt in delta)
        self.disturbance = tuple(dist if dist.horizon_period == hp else dist.match_horizon_period(hp)
                                 for dist in disturbance)
        self._check()

    def _check(self):
        names = [dlt.name for dlt in self.delta]
        if len(set(names)) != len(names):
            raise ConstructionError(f"Delta names must be unique, got {names}")
        dist_names = [dist.name for dist in self.disturbance]
        if len(set(dist_names)) != len(dist_names):
            raise ConstructionError(f"Disturbance names must be unique, got {dist_names}")
        for dlt in self.delta:
            if isinstance(dlt, DeltaDelayZ) and self.timestep == 0:
                raise TimeDomainMismatchError("DeltaDelayZ cannot be used in a continuous-time Ulft")
            if isinstance(dlt, DeltaIntegrator) and self.timestep != 0:
                raise TimeDomainMismatchError("DeltaIntegrator cannot be used in a discrete-time Ulft")

        for k in range(self.horizon_period.total):
            rows = sum(int(dlt.dim_in[k]) for dlt in self.delta)
            cols = sum(int(dlt.dim_out[k]) for dlt in self.delta)
            a, b, c, d = self.a[k], self.b[k], self.c[k], self.d[k]
            if a.size == 0:
                a = self.a[k] = np.zeros((rows, cols))
            if b.size == 0:
                b = self.b[k] = np.zeros((rows, d.shape[1]))
            if c.size == 0:
                c = self.c[k] = np.zeros((d.shape[0], cols))
            if a.shape != (rows, cols):
                raise DimensionError(f"a has size {a.shape} at step {k}, the Deltas require {(rows, cols)}")
            if b.shape[0] != rows or c.shape[1] != cols:
                raise DimensionError(f"b/c do not match the Delta dimensions at step {k}")
            if d.shape != (c.shape[0], b.shape[1]):
                raise DimensionError(f"d has size {d.shape} at step {k}, expected {(c.shape[0], b.shape[1])}")
            for dist in self.disturbance:
                dist.channels(k, d.shape[1])

    def __repr__(self):
        names = ', '.join(f"{type(dlt).__name__}({dlt.name!r})" for dlt in self.delta) or 'none'
        return (f"Ulft(horizon_period={list(self.horizon_period)}, timestep={self.timestep}, "
                f"inputs={self.dim_in.tolist()}, outputs={self.dim_out.tolist()}, delta=[{names}], "
                f"disturbance={[dist.name for dist in self.disturbance]})")

    @property
    def dim_in(self):
        return np.array([b.shape[1] for b in self.b])

    @property
    def dim_out(self):
        return np.array([c.shape[0] for c in self.c])

    @property
    def has_state(self):
        return any(dlt.is_state for dlt in self.delta)

    def delta_index(self, name):
        for i, dlt in enumerate(self.delta):
            if dlt.name == name:
                return i
        raise NotFoundError(f"No Delta named {name!r}")

    def _slices(self, k):
        """Row (z) and column (w) slices of every Delta at step k."""
        rows = _offsets([dlt.dim_in[k] for dlt in self.delta])
        cols = _offsets([dlt.dim_out[k] for dlt in self.delta])
        return ([slice(rows[i], rows[i + 1]) for i in range(len(self.delta))],
                [slice(cols[i], cols[i + 1]) for i in range(len(self.delta))])

    # construction

    @classmethod
    def from_matrix(cls, d, horizon_period=None, timestep=-1):
        """Memoryless gain (one matrix, or one per step)."""
        hp = as_horizon_period(horizon_period)
        mats = _per_step_matrices(d, hp.total, 'd', horizon_period is not None)
        return cls([np.zeros((0, 0))] * hp.total,
                   [np.zeros((0, m.shape[1])) for m in mats],
                   [np.zeros((m.shape[0], 0)) for m in mats],
                   mats, horizon_period=hp, timestep=timestep)

    @classmethod
    def from_ss(cls, sys, horizon_period=None):
        """Ulft of a python-control state-space (or transfer function) system."""
        if isinstance(sys, ctrl.TransferFunction):
            sys = ctrl.ss(sys)
        A, B, C, D = ctrl.ssdata(sys)
        timestep = dt_to_timestep(sys.dt)
        if A.shape[0] == 0:
            lft = cls.from_matrix(D, timestep=timestep)
        else:
            state = DeltaIntegrator(A.shape[0]) if timestep == 0 else DeltaDelayZ(A.shape[0], timestep)
            lft = cls(A, B, C, D, delta=state, timestep=timestep)
        if horizon_period is not None:
            lft = lft.match_horizon_period(horizon_period)
        return lft

    def to_ss(self):
        """State-space system of a time-invariant Ulft whose only Delta is its state."""
        if self.horizon_period != (0, 1):
            raise UnsupportedFeatureError("Only time-invariant Ulfts (horizon_period [0, 1]) convert to state space")
        others = [dlt.name for dlt in self.delta if not dlt.is_state]
        if others:
            raise UnsupportedFeatureError(f"Ulft still contains uncertain Deltas {others}")
        if len(self.delta) > 1:
            raise UnsupportedFeatureError("Ulft has more than one state Delta")
        return ctrl.ss(self.a[0], self.b[0], self.c[0], self.d[0], dt=timestep_to_dt(self.timestep))

    # horizon_period and disturbances

    def match_horizon_period(self, horizon_period):
        hp = as_horizon_period(horizon_period)
        if hp == self.horizon_period:
            return self
        expand = lambda seq: expand_sequence(seq, self.horizon_period, hp)
        return Ulft(expand(self.a), expand(self.b), expand(self.c), expand(self.d),
                    delta=[dlt.match_horizon_period(hp) for dlt in self.delta], horizon_period=hp,
                    disturbance=[dist.match_horizon_period(hp) for dist in self.disturbance],
                    timestep=self.timestep)

    def _replace(self, **fields):
        args = dict(a=self.a, b=self.b, c=self.c, d=self.d, delta=self.delta,
                    horizon_period=self.horizon_period, disturbance=self.disturbance,
                    timestep=self.timestep)
        args.update(fields)
        return Ulft(**args)

    def add_disturbance(self, disturbance):
        if isinstance(disturbance, Disturbance):
            disturbance = [disturbance]
        disturbance = list(disturbance)
        hp = common_horizon_period(self.horizon_period, *(dist.horizon_period for dist in disturbance))
        lft = self.match_horizon_period(hp)
        return lft._replace(disturbance=list(lft.disturbance) + [dist.match_horizon_period(hp)
                                                                  for dist in disturbance])

    def remove_disturbance(self, key):
        """Remove a disturbance by position or by name."""
        disturbance = list(self.disturbance)
        if isinstance(key, numbers.Integral):
            if not -len(disturbance) <= key < len(disturbance):
                raise NotFoundError(f"No disturbance at position {key}")
            del disturbance[key]
        else:
            names = [dist.name for dist in disturbance]
            if key not in names:
                raise NotFoundError(f"No disturbance named {key!r}")
            del disturbance[names.index(key)]
        return self._replace(disturbance=disturbance)

    # algebra

    def _common_timestep(self, other):
        if self.timestep == other.timestep or not other.has_state:
            return self.timestep
        if not self.has_state:
            return other.timestep
        if self.timestep != 0 and other.timestep != 0 and min(self.timestep, other.timestep) < 0:
            return max(self.timestep, other.timestep)
        raise TimeDomainMismatchError(
            f"Cannot combine Ulfts with timesteps {self.timestep} and {other.timestep}")

    def _align(self, other):
        other = to_lft(other)
        timestep = self._common_timestep(other)
        hp = common_horizon_period(self.horizon_period, other.horizon_period)
        left, right = self.match_horizon_period(hp), other.match_horizon_period(hp)
        if left.timestep != timestep:
            left = left._replace(timestep=timestep)
        if right.timestep != timestep:
            right = right._replace(timestep=timestep)
        return left, right

    def __mul__(self, other):
        if isinstance(other, numbers.Number):
            return self._replace(b=[b * other for b in self.b], d=[d * other for d in self.d])
        left, right = self._align(other)
        a, b, c, d = [], [], [], []
        for k in range(left.horizon_period.total):
            a1, b1, c1, d1 = left.a[k], left.b[k], left.c[k], left.d[k]
            a2, b2, c2, d2 = right.a[k], right.b[k], right.c[k], right.d[k]
            if b1.shape[1] != c2.shape[0]:
                raise DimensionError(
                    f"Cannot connect {c2.shape[0]} output(s) into {b1.shape[1]} input(s) at step {k}")
            a.append(np.block([[a1, b1 @ c2], [np.zeros((a2.shape[0], a1.shape[1])), a2]]))
            b.append(np.vstack([b1 @ d2, b2]))
            c.append(np.hstack([c1, d1 @ c2]))
            d.append(d1 @ d2)
        return _compose(a, b, c, d, left, right)

    def __rmul__(self, other):
        if isinstance(other, numbers.Number):
            return self._replace(c=[c * other for c in self.c], d=[d * other for d in self.d])
        return to_lft(other) * self

    __matmul__ = __mul__
    __rmatmul__ = __rmul__

    def __add__(self, other):
        if isinstance(other, numbers.Number):
            other = Ulft.from_matrix([np.full(d.shape, float(other)) for d in self.d],
                                     self.horizon_period, self.timestep)
        left, right = self._align(other)
        a, b, c, d = [], [], [], []
        for k in range(left.horizon_period.total):
            if left.d[k].shape != right.d[k].shape:
                raise DimensionError(
                    f"Cannot add Ulfts of sizes {left.d[k].shape} and {right.d[k].shape} at step {k}")
            a.append(linalg.block_diag(left.a[k], right.a[k]))
            b.append(np.vstack([left.b[k], right.b[k]]))
            c.append(np.hstack([left.c[k], right.c[k]]))
            d.append(left.d[k] + right.d[k])
        return _compose(a, b, c, d, left, right)

    def __radd__(self, other):
        return self + other

    def __neg__(self):
        return self._replace(c=[-c for c in self.c], d=[-d for d in self.d])

    def __sub__(self, other):
        return self + (-to_lft(other) if not isinstance(other, numbers.Number) else -other)

    def __rsub__(self, other):
        return -self + other

    # sampling and simulation

    def sample_deltas(self, names, samples, timestep=None):
        """
        Replace the Deltas called `names` by concrete `samples` (Ulfts, matrices
        or python-control systems). Sample Deltas named like a remaining Delta
        are merged with it.
        """
        if isinstance(names, str):
            names, samples = [names], [samples]
        if len(names) != len(samples):
            raise DimensionError("Every sampled Delta needs exactly one sample")
        lft = self
        for name, sample in zip(names, samples):
            lft = lft._sample_one(name, sample, timestep)
        return lft

    def _sample_one(self, name, sample, timestep):
        j = self.delta_index(name)
        sample = to_lft(sample, timestep=self.timestep if timestep is None else timestep)
        lft, sample = self._align(sample)
        dlt = lft.delta[j]
        keep = [i for i in range(len(lft.delta)) if i != j]
        a, b, c, d = [], [], [], []
        for k in range(lft.horizon_period.total):
            rows, cols = lft._slices(k)
            rk = np.r_[tuple(np.arange(rows[i].start, rows[i].stop) for i in keep)] if keep else np.zeros(0, int)
            ck = np.r_[tuple(np.arange(cols[i].start, cols[i].stop) for i in keep)] if keep else np.zeros(0, int)
            rj, cj = rows[j], cols[j]
            A, B, C, D = lft.a[k], lft.b[k], lft.c[k], lft.d[k]
            As, Bs, Cs, Ds = sample.a[k], sample.b[k], sample.c[k], sample.d[k]
            if Ds.shape != (dlt.dim_out[k], dlt.dim_in[k]):
                raise DimensionError(f"Sample of {name} has size {Ds.shape} at step {k}, expected "
                                     f"{(dlt.dim_out[k], dlt.dim_in[k])}")
            A_kk, A_kj, A_jk, A_jj = A[np.ix_(rk, ck)], A[rk][:, cj], A[rj][:, ck], A[rj, cj]
            B_k, B_j, C_k, C_j = B[rk], B[rj], C[:, ck], C[:, cj]

            try:
                F = np.linalg.inv(np.eye(Ds.shape[0]) - Ds @ A_jj)
            except np.linalg.LinAlgError as err:
                raise ConstructionError(f"Substituting the sample of {name} gives an ill-posed loop") from err
            # w_j = Wk w_keep + Ws w_sample + Wu u
            Wk, Ws, Wu = F @ Ds @ A_jk, F @ Cs, F @ Ds @ B_j
            Zk, Zs, Zu = A_jk + A_jj @ Wk, A_jj @ Ws, B_j + A_jj @ Wu

            a.append(np.block([[A_kk + A_kj @ Wk, A_kj @ Ws],
                               [Bs @ Zk,          As + Bs @ Zs]]))
            b.append(np.vstack([B_k + A_kj @ Wu, Bs @ Zu]))
            c.append(np.hstack([C_k + C_j @ Wk, C_j @ Ws]))
            d.append(D + C_j @ Wu)

        deltas = [lft.delta[i] for i in keep] + list(sample.delta)
        return _merge_repeated(a, b, c, d, deltas, lft.horizon_period, lft.disturbance, lft.timestep)

    def simulate(self, inputs, initial_state=None):
        """
        Response of a discrete-time Ulft whose only Delta is its state.
        `inputs` has one column (or one vector) per time step; returns the
        outputs stacked the same way.
        """
        if self.timestep == 0:
            raise UnsupportedFeatureError("Only discrete-time Ulfts can be simulated")
        if any(not dlt.is_state for dlt in self.delta):
            raise UnsupportedFeatureError("Sample the uncertain Deltas before simulating")
        if isinstance(inputs, np.ndarray) and inputs.ndim == 2:
            inputs = [inputs[:, t] for t in range(inputs.shape[1])]
        elif isinstance(inputs, np.ndarray):
            inputs = [np.atleast_1d(u) for u in inputs]

        x = np.zeros(self.a[0].shape[1]) if initial_state is None else np.asarray(initial_state, dtype=float)
        outputs = []
        for t, u in enumerate(inputs):
            k = effective_index(t, self.horizon_period)
            u = np.atleast_1d(np.asarray(u, dtype=float))
            if u.size != self.d[k].shape[1] or x.size != self.a[k].shape[1]:
                raise DimensionError(f"Input or state has the wrong size at step {t}")
            outputs.append(self.c[k] @ x + self.d[k] @ u)
            x = self.a[k] @ x + self.b[k] @ u
        if len({y.size for y in outputs}) <= 1:
            return np.column_stack(outputs) if outputs else np.zeros((0, 0))
        return outputs


def _combined_disturbances(left, right):
    names = {dist.name for dist in left.disturbance}
    return list(left.disturbance) + [dist for dist in right.disturbance if dist.name not in names]


def _compose(a, b, c, d, left, right):
    return _merge_repeated(a, b, c, d, list(left.delta) + list(right.delta), left.horizon_period,
                           _combined_disturbances(left, right), left.timestep)


def _merge_repeated(a, b, c, d, deltas, hp, disturbance, timestep):
    """Build a Ulft, merging Deltas that share a name into one block."""
    order = []
    groups = {}
    for i, dlt in enumerate(deltas):
        if dlt.name not in groups:
            order.append(dlt.name)
            groups[dlt.name] = []
        groups[dlt.name].append(i)
    if len(order) == len(deltas):
        return Ulft(a, b, c, d, delta=deltas, horizon_period=hp, disturbance=disturbance, timestep=timestep)

    merged = [reduce(lambda x, y: x.merge(y), [deltas[i] for i in groups[name]]) for name in order]
    for k in range(hp.total):
        rows = _offsets([dlt.dim_in[k] for dlt in deltas])
        cols = _offsets([dlt.dim_out[k] for dlt in deltas])
        rp = np.concatenate([np.arange(rows[i], rows[i + 1]) for name in order for i in groups[name]]).astype(int)
        cp = np.concatenate([np.arange(cols[i], cols[i + 1]) for name in order for i in groups[name]]).astype(int)
        a[k] = a[k][np.ix_(rp, cp)]
        b[k] = b[k][rp]
        c[k] = c[k][:, cp]
    return Ulft(a, b, c, d, delta=merged, horizon_period=hp, disturbance=disturbance, timestep=timestep)


def to_lft(obj, horizon_period=None, timestep=None):
    """Ulft of a Ulft, Delta, python-control system or (per-step) matrix."""
    if isinstance(obj, Ulft):
        lft = obj
    elif isinstance(obj, Delta):
        lft = obj.to_lft() if timestep is None else obj.to_lft(timestep)
    elif isinstance(obj, (ctrl.StateSpace, ctrl.TransferFunction)):
        lft = Ulft.from_ss(obj)
    elif isinstance(obj, (numbers.Number, np.ndarray, list, tuple)):
        timestep = -1 if timestep is None else timestep
        if isinstance(obj, (list, tuple)) and horizon_period is not None:
            # one matrix per step
            return Ulft.from_matrix(list(obj), horizon_period, timestep)
        lft = Ulft.from_matrix(np.asarray(obj, dtype=float), timestep=timestep)
    else:
        raise TypeError(f"Cannot convert {type(obj).__name__} to a Ulft")
    if horizon_period is not None:
        lft = lft.match_horizon_period(horizon_period)
    return lft
