from collections import namedtuple

import numpy as np
import control as ctrl

from .delta import DeltaBounded, DeltaDelayZ, DeltaDlti, DeltaIntegrator, DeltaSlti
from .errors import DimensionError, NotFoundError, UnsupportedFeatureError
from .ulft import Ulft, to_lft
from .utils import dt_to_timestep, timestep_to_dt


class UncertainBlock(namedtuple('UncertainBlock', ['name', 'kind', 'size', 'bound', 'range'])):
    """
    One uncertain element of an UncertainSystem.

    kind is 'ureal' (real parameter repeated size[0] times, values in range),
    'ultidyn' (LTI block with gain at most bound) or 'udyn' (opaque operator).
    size is (outputs, inputs).
    """

    __slots__ = ()


class UncertainSystem:
    """
    Generalized plant in feedback with a list of uncertain blocks:
    inputs are [w_1; ...; w_N; u], outputs are [z_1; ...; z_N; y].
    """

    def __init__(self, nominal, blocks):
        self.nominal = nominal
        self.blocks = list(blocks)
        n_w = sum(blk.size[0] for blk in self.blocks)
        n_z = sum(blk.size[1] for blk in self.blocks)
        if nominal.ninputs < n_w or nominal.noutputs < n_z:
            raise DimensionError("The nominal system is smaller than its uncertain blocks")

    def __repr__(self):
        return (f"UncertainSystem(outputs={self.noutputs}, inputs={self.ninputs}, "
                f"blocks={[(blk.name, blk.kind) for blk in self.blocks]})")

    @property
    def uncertainty(self):
        return {blk.name: blk for blk in self.blocks}

    @property
    def ninputs(self):
        return self.nominal.ninputs - sum(blk.size[0] for blk in self.blocks)

    @property
    def noutputs(self):
        return self.nominal.noutputs - sum(blk.size[1] for blk in self.blocks)

    def substitute(self, values):
        """
        Close the loop with concrete values, {name: value}. A ureal takes a
        scalar, the other kinds a matrix or python-control system. Returns a
        python-control StateSpace.
        """
        missing = [blk.name for blk in self.blocks if blk.name not in values]
        if missing:
            raise NotFoundError(f"No value given for {missing}")
        lft = control_to_lft(self, {blk.name: _placeholder(blk) for blk in self.blocks if blk.kind == 'udyn'})
        timestep = lft.timestep
        names, samples = [], []
        for blk in self.blocks:
            value = values[blk.name]
            if blk.kind == 'ureal':
                value = float(value) * np.eye(blk.size[0])
            names.append(blk.name)
            samples.append(to_lft(value, timestep=timestep))
        return lft.sample_deltas(names, samples).to_ss()


def _placeholder(blk):
    return DeltaBounded(blk.name, blk.size[0], blk.size[1], np.inf if blk.bound is None else blk.bound)


def lft_to_control(lft):
    """
    UncertainSystem equivalent to a time-invariant Ulft, and a map from the
    names of its opaque 'udyn' blocks back to the original Deltas.
    """
    if not isinstance(lft, Ulft):
        raise TypeError(f"lft_to_control expects a Ulft, got {type(lft).__name__}")
    if lft.horizon_period != (0, 1):
        raise UnsupportedFeatureError(
            f"Only Ulfts with horizon_period [0, 1] can be converted, got {list(lft.horizon_period)}")

    rows, cols = lft._slices(0)
    a, b, c, d = lft.a[0], lft.b[0], lft.c[0], lft.d[0]
    state = [i for i, dlt in enumerate(lft.delta) if dlt.is_state]
    uncertain = [i for i, dlt in enumerate(lft.delta) if not dlt.is_state]
    index = lambda sl, ids: (np.concatenate([np.arange(sl[i].start, sl[i].stop) for i in ids]).astype(int)
                             if ids else np.zeros(0, int))
    xr, xc = index(rows, state), index(cols, state)
    zr, wc = index(rows, uncertain), index(cols, uncertain)

    A = a[np.ix_(xr, xc)]
    B = np.hstack([a[np.ix_(xr, wc)], b[xr]])
    C = np.vstack([a[np.ix_(zr, xc)], c[:, xc]])
    D = np.block([[a[np.ix_(zr, wc)], b[zr]],
                  [c[:, wc], d]])
    nominal = ctrl.ss(A, B, C, D, dt=timestep_to_dt(lft.timestep))

    blocks, delta_map = [], {}
    for i in uncertain:
        dlt = lft.delta[i]
        size = (int(dlt.dim_out[0]), int(dlt.dim_in[0]))
        if isinstance(dlt, DeltaSlti):
            blocks.append(UncertainBlock(dlt.name, 'ureal', size, None,
                                         (float(dlt.lower_bound[0]), float(dlt.upper_bound[0]))))
        elif isinstance(dlt, DeltaDlti):
            blocks.append(UncertainBlock(dlt.name, 'ultidyn', size, float(dlt.upper_bound[0]), None))
        else:
            blocks.append(UncertainBlock(dlt.name, 'udyn', size, None, None))
            delta_map[dlt.name] = dlt
    return UncertainSystem(nominal, blocks), delta_map


def control_to_lft(usys, delta_map=None):
    """Ulft of an UncertainSystem; 'udyn' blocks are restored from `delta_map`."""
    if isinstance(usys, (ctrl.StateSpace, ctrl.TransferFunction)):
        return Ulft.from_ss(usys)
    if not isinstance(usys, UncertainSystem):
        raise TypeError(f"control_to_lft expects an UncertainSystem, got {type(usys).__name__}")
    delta_map = delta_map or {}

    deltas = []
    for blk in usys.blocks:
        if blk.kind == 'ureal':
            deltas.append(DeltaSlti(blk.name, blk.size[0], *blk.range))
        elif blk.kind == 'ultidyn':
            deltas.append(DeltaDlti(blk.name, blk.size[0], blk.size[1], blk.bound))
        elif blk.name in delta_map:
            deltas.append(delta_map[blk.name])
        else:
            raise UnsupportedFeatureError(f"No Delta given for the opaque block {blk.name!r}")

    A, B, C, D = ctrl.ssdata(usys.nominal)
    timestep = dt_to_timestep(usys.nominal.dt)
    n_x = A.shape[0]
    n_w = sum(blk.size[0] for blk in usys.blocks)
    n_z = sum(blk.size[1] for blk in usys.blocks)
    if n_x:
        state = DeltaIntegrator(n_x) if timestep == 0 else DeltaDelayZ(n_x, timestep)
        deltas.insert(0, state)

    a = np.block([[A, B[:, :n_w]],
                  [C[:n_z], D[:n_z, :n_w]]])
    b = np.vstack([B[:, n_w:], D[:n_z, n_w:]])
    c = np.hstack([C[n_z:], D[n_z:, :n_w]])
    d = D[n_z:, n_w:]
    return Ulft(a, b, c, d, delta=deltas, timestep=timestep)
