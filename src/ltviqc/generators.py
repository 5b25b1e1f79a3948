"""Random Deltas and Ulfts for tests. Every routine takes an explicit seed or Generator."""
import numpy as np

from . import delta as deltas
from .errors import ConstructionError
from .horizon_period import as_horizon_period
from .ulft import Ulft

DELTA_KINDS = {cls.__name__: cls for cls in (deltas.DeltaDelayZ, deltas.DeltaIntegrator, deltas.DeltaSlti,
                                              deltas.DeltaSltv, deltas.DeltaSltvRateBnd, deltas.DeltaDlti,
                                              deltas.DeltaBounded, deltas.DeltaSectorBounded,
                                              deltas.DeltaConstantDelay)}
DEFAULT_POOL = ('DeltaSlti', 'DeltaSltv', 'DeltaBounded', 'DeltaDlti')


def _kind(kind):
    name = kind if isinstance(kind, str) else getattr(kind, '__name__', None)
    if name not in DELTA_KINDS:
        raise ConstructionError(f"Unknown Delta kind {kind!r}")
    return DELTA_KINDS[name]


def random_delta(kind, name=None, horizon_period=None, rng=None, timestep=-1, max_dim=3):
    """Random instance of a Delta class (given as class or class name)."""
    rng = np.random.default_rng(rng)
    cls = _kind(kind)
    hp = as_horizon_period(horizon_period)
    total = hp.total
    dim = int(rng.integers(1, max_dim + 1))

    if cls is deltas.DeltaDelayZ:
        return cls(rng.integers(1, max_dim + 1, total), timestep, hp)
    if cls is deltas.DeltaIntegrator:
        return cls(dim)
    if cls is deltas.DeltaSlti:
        return cls(name, dim, -rng.uniform(0.1, 1), rng.uniform(0.1, 1), hp)
    if cls is deltas.DeltaSltv:
        return cls(name, dim, -rng.uniform(0.1, 1, total), rng.uniform(0.1, 1, total), hp)
    if cls is deltas.DeltaSltvRateBnd:
        return cls(name, dim, -rng.uniform(0.1, 1, total), rng.uniform(0.1, 1, total),
                   rng.uniform(0.05, 0.5, total), hp)
    if cls is deltas.DeltaDlti:
        return cls(name, dim, int(rng.integers(1, max_dim + 1)), rng.uniform(0.1, 1), hp)
    if cls is deltas.DeltaBounded:
        return cls(name, rng.integers(1, max_dim + 1, total), rng.integers(1, max_dim + 1, total),
                   rng.uniform(0.1, 1, total), hp)
    if cls is deltas.DeltaSectorBounded:
        lower = rng.uniform(0, 0.5, total)
        return cls(name, dim, lower, lower + rng.uniform(0.1, 1, total), hp)
    return cls(name, dim, int(rng.integers(1, 4)), hp)


def random_lft(horizon_period=None, req_deltas=(), num_deltas=None, timestep=-1, rng=None,
               dim_in=None, dim_out=None, max_dim=3):
    """
    Random Ulft containing one Delta of every kind in `req_deltas` plus
    randomly chosen uncertain Deltas up to `num_deltas` in total. Entries of
    `req_deltas` are Delta classes, their names, or Delta instances.
    """
    rng = np.random.default_rng(rng)
    hp = as_horizon_period(horizon_period)
    # preconfigured Delta instances are used as given
    kinds = [kind if isinstance(kind, deltas.Delta) else _kind(kind) for kind in req_deltas]
    num_deltas = len(kinds) if num_deltas is None else num_deltas
    if num_deltas < len(kinds):
        raise ConstructionError(f"num_deltas {num_deltas} is smaller than the {len(kinds)} required Deltas")
    kinds += [_kind(k) for k in rng.choice(DEFAULT_POOL, num_deltas - len(kinds))]

    classes = {kind if isinstance(kind, type) else type(kind) for kind in kinds}
    if deltas.DeltaIntegrator in classes:
        if deltas.DeltaDelayZ in classes:
            raise ConstructionError("DeltaDelayZ and DeltaIntegrator cannot share one Ulft")
        timestep = 0
    elif timestep == 0 and deltas.DeltaDelayZ in classes:
        raise ConstructionError("DeltaDelayZ cannot be used in a continuous-time Ulft")
    if timestep == 0 and hp != (0, 1):
        raise ConstructionError("Continuous-time Ulfts must have horizon_period [0, 1]")

    blocks = []
    for i, kind in enumerate(kinds):
        if isinstance(kind, deltas.Delta):
            blocks.append(kind.match_horizon_period(hp))
        else:
            blocks.append(random_delta(kind, f"delta_{i}", hp, rng, timestep, max_dim))
    blocks.sort(key=lambda dlt: not dlt.is_state)

    n_u = int(rng.integers(1, max_dim + 1)) if dim_in is None else dim_in
    n_y = int(rng.integers(1, max_dim + 1)) if dim_out is None else dim_out
    a, b, c, d = [], [], [], []
    for k in range(hp.total):
        rows = sum(int(dlt.dim_in[k]) for dlt in blocks)
        cols = sum(int(dlt.dim_out[k]) for dlt in blocks)
        scale = 0.5 / np.sqrt(max(rows, cols, 1))
        a.append(scale * rng.standard_normal((rows, cols)))
        b.append(rng.standard_normal((rows, n_u)))
        c.append(rng.standard_normal((n_y, cols)))
        d.append(rng.standard_normal((n_y, n_u)))
    return Ulft(a, b, c, d, delta=blocks, horizon_period=hp, timestep=timestep)
