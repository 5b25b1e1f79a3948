import copy
import itertools

import numpy as np
import cvxpy as cvx
import control as ctrl
from scipy import linalg

from .basis import Basis, basis_spec
from .errors import ConstructionError, DimensionError, UnsupportedFeatureError
from .horizon_period import as_horizon_period, effective_index, expand_sequence
from .utils import kron_realization, static_ss


def sym(M):
    return (M + M.T) / 2


def kyp_positive(sys, X, discrete, shift=0.0):
    """
    Constraints enforcing Psi^* X Psi >= shift on the stability boundary, with
    Psi the realization `sys`. Returns the constraints and the KYP certificate.
    """
    A, B, C, D = ctrl.ssdata(sys)
    n, m = B.shape
    CD = np.hstack([C, D])
    if n == 0:
        return [sym(CD.T @ X @ CD) >> shift * np.eye(m)], None

    P = cvx.Variable((n, n), symmetric=True)
    if discrete:
        lyap = cvx.bmat([[A.T @ P @ A - P, A.T @ P @ B],
                         [B.T @ P @ A,     B.T @ P @ B]])
    else:
        lyap = cvx.bmat([[A.T @ P + P @ A, P @ B],
                         [B.T @ P,         np.zeros((m, m))]])
    return [sym(lyap + CD.T @ X @ CD) >> shift * np.eye(n + m)], P


class Multiplier:
    """
    IQC multiplier: a filter psi = Psi(input) and, per step, a quadratic form
    `quad[k]` such that sum psi[k]' quad[k] psi[k] >= 0 for every signal pair
    allowed by the block it describes.

    For Delta multipliers the filter input is [z; w] (block input, block
    output); for disturbance multipliers it is the selected input channels.
    """

    _step_attributes = ('filter_a', 'filter_b', 'filter_c', 'filter_d', 'quad')

    def __init__(self, name, horizon_period, discrete=True):
        self.name = name
        self.horizon_period = as_horizon_period(horizon_period)
        self.discrete = discrete
        self.filter_a = []
        self.filter_b = []
        self.filter_c = []
        self.filter_d = []
        self.quad = []
        self.constraints = []
        self.decision_vars = []

    def __repr__(self):
        return (f"{type(self).__name__}(name={self.name!r}, "
                f"horizon_period={list(self.horizon_period)})")

    def _set_filter(self, sys):
        """Use one time-invariant realization at every step."""
        A, B, C, D = ctrl.ssdata(sys)
        total = self.horizon_period.total
        self.filter_a = [A] * total
        self.filter_b = [B] * total
        self.filter_c = [C] * total
        self.filter_d = [D] * total

    @property
    def filter_states(self):
        return [a.shape[0] for a in self.filter_a]

    def match_horizon_period(self, horizon_period):
        """Re-expand the per-step data; decision variables are shared, not duplicated."""
        new_hp = as_horizon_period(horizon_period)
        new = copy.copy(self)
        for attr in self._step_attributes:
            setattr(new, attr, expand_sequence(getattr(self, attr), self.horizon_period, new_hp))
        new.horizon_period = new_hp
        return new


class BasisMultiplier(Multiplier):
    """Multiplier built on a stable rational basis (see ltviqc.basis)."""

    default_q11_kyp = False

    def __init__(self, name, horizon_period, discrete=True, dim=1, constraint_q11_kyp=None,
                 basis_length=None, basis_poles=None, basis_function=None,
                 basis_realization=None, block_realization=None):
        super().__init__(name, horizon_period, discrete)
        spec = basis_spec(basis_length, basis_poles, basis_function, basis_realization, block_realization)
        self.basis = Basis(spec, discrete=discrete, dim=dim)
        self.constraint_q11_kyp = self.default_q11_kyp if constraint_q11_kyp is None else constraint_q11_kyp

    @property
    def basis_length(self):
        return self.basis.basis_length

    @property
    def basis_poles(self):
        return self.basis.basis_poles

    @property
    def basis_function(self):
        return self.basis.basis_function

    @property
    def basis_realization(self):
        return self.basis.basis_realization

    @property
    def block_realization(self):
        return self.basis.block_realization

    def _positive(self, sys, X):
        """Psi^* X Psi >= 0, through KYP or plain semidefiniteness."""
        if self.constraint_q11_kyp:
            constraints, P = kyp_positive(sys, X, self.discrete)
            if P is not None:
                self.decision_vars.append(P)
            return constraints
        return [X >> 0]


def _bound_transform(lower, upper, size):
    """w~ = w - center z, in terms of psi = [Psi z; Psi w]."""
    center = (upper + lower) / 2
    I = np.eye(size)
    return np.block([[I, np.zeros_like(I)], [-center * I, I]]), (upper - lower) / 2


def _kron_eye(X, n):
    """X (x) I_n for a cvxpy matrix X."""
    rows, cols = X.shape
    return cvx.bmat([[X[i, j] * np.eye(n) for j in range(cols)] for i in range(rows)])


class MultiplierSlti(BasisMultiplier):
    """D-G scaling of a repeated time-invariant real parameter."""

    _step_attributes = Multiplier._step_attributes + ('dim_outin', 'lower_bound', 'upper_bound')

    def __init__(self, delta, discrete=True, **options):
        n = int(delta.dim_out[0])
        super().__init__(delta.name, delta.horizon_period, discrete, dim=n, **options)
        self.dim_outin = delta.dim_out.copy()
        self.lower_bound = delta.lower_bound.copy()
        self.upper_bound = delta.upper_bound.copy()

        block = self.basis.block(n)
        self._set_filter(ctrl.append(block, block))
        size = block.noutputs
        T, radius = _bound_transform(self.lower_bound[0], self.upper_bound[0], size)

        D = cvx.Variable((size, size), symmetric=True)
        S = cvx.Variable((size, size))
        G = S - S.T
        self.decision_vars += [D, S]
        self.constraints += self._positive(block, D)
        inner = cvx.bmat([[radius ** 2 * D, G], [G.T, -D]])
        self.quad = [T.T @ inner @ T] * self.horizon_period.total


class MultiplierSltv(Multiplier):
    """Static D-G scaling, chosen independently at every step."""

    _step_attributes = Multiplier._step_attributes + ('dim_outin', 'lower_bound', 'upper_bound')

    def __init__(self, delta, discrete=True, **options):
        if options:
            raise UnsupportedFeatureError(f"{type(self).__name__} takes no basis options, got {sorted(options)}")
        super().__init__(delta.name, delta.horizon_period, discrete)
        self.dim_outin = delta.dim_out.copy()
        self.lower_bound = delta.lower_bound.copy()
        self.upper_bound = delta.upper_bound.copy()

        for k in range(self.horizon_period.total):
            n = int(self.dim_outin[k])
            self.filter_a.append(np.zeros((0, 0)))
            self.filter_b.append(np.zeros((0, 2 * n)))
            self.filter_c.append(np.zeros((2 * n, 0)))
            self.filter_d.append(np.eye(2 * n))
            D = cvx.Variable((n, n), symmetric=True)
            S = cvx.Variable((n, n))
            G = S - S.T
            self.decision_vars += [D, S]
            self.constraints.append(D >> 0)
            T, radius = _bound_transform(self.lower_bound[k], self.upper_bound[k], n)
            self.quad.append(T.T @ cvx.bmat([[radius ** 2 * D, G], [G.T, -D]]) @ T)


def _polytope_vertices(lower, upper, rate):
    """Vertices of {x : lower <= x <= upper, |x[i] - x[i + 1]| <= rate[i]}."""
    d = len(lower)
    rows, rhs = [], []
    for i in range(d):
        e = np.zeros(d)
        e[i] = 1.0
        rows += [e, -e]
        rhs += [upper[i], -lower[i]]
    for i in range(d - 1):
        if np.isfinite(rate[i]):
            e = np.zeros(d)
            e[i], e[i + 1] = 1.0, -1.0
            rows += [e, -e]
            rhs += [rate[i], rate[i]]
    G, h = np.array(rows), np.array(rhs, dtype=float)

    vertices = []
    for active in itertools.combinations(range(h.size), d):
        active = list(active)
        if abs(np.linalg.det(G[active])) < 1e-12:
            continue
        x = np.linalg.solve(G[active], h[active])
        if np.all(G @ x <= h + 1e-9) and not any(np.allclose(x, v) for v in vertices):
            vertices.append(x)
    return vertices


class MultiplierSltvRateBnd(BasisMultiplier):
    """
    Multiplier of a repeated time-varying parameter with a bounded change per
    step. The basis is a chain of pure delays,

        psi[k] = [z[k]; ...; z[k-m]; w[k]; ...; w[k-m]],

    and quad[k] is a free symmetric Q[k] with

        [I; Delta]' Q[k] [I; Delta] >= 0,   Delta = diag(d[k] I, ..., d[k-m] I),

    at every vertex (d[k], ..., d[k-m]) of the parameter histories allowed by
    the bounds and rate bounds, and Q[k]_22 <= 0. The last condition makes the
    form concave in the parameters, so the vertices cover the whole polytope.

    basis_length is m + 1: 2 by default in discrete time, 1 (memoryless) in
    continuous time. Only poles at 0 are accepted. The horizon is extended to
    at least m so that the steps with a shorter history are never repeated.
    """

    _step_attributes = Multiplier._step_attributes + ('dim_outin', 'lower_bound', 'upper_bound', 'rate_bound')

    def __init__(self, delta, discrete=True, basis_length=None, basis_poles=None, **options):
        given = sorted(key for key, value in options.items() if value is not None)
        if given:
            raise UnsupportedFeatureError(f"{type(self).__name__} only takes basis_length and basis_poles, got {given}")
        if np.ptp(delta.dim_out):
            raise UnsupportedFeatureError(f"{type(self).__name__} requires a constant dimension")
        if basis_poles is not None:
            if np.any(np.asarray(basis_poles) != 0):
                raise UnsupportedFeatureError(f"{type(self).__name__} only accepts basis poles at 0")
            if basis_length is None:
                basis_length = np.size(basis_poles) + 1
        if basis_length is None:
            basis_length = 2 if discrete else 1
        if not discrete and basis_length != 1:
            raise UnsupportedFeatureError("Continuous-time rate bounds are only supported with basis_length 1")
        # one repeated pole at 0 chains the delays: z[k], z[k-1], ..., z[k-m]
        basis_poles = [0.0] if basis_length > 1 else None

        self.memory = int(basis_length) - 1
        hp = delta.horizon_period
        n = int(delta.dim_out[0])
        super().__init__(delta.name, (max(hp.horizon, self.memory), hp.period), discrete, dim=n,
                         basis_length=basis_length, basis_poles=basis_poles)
        delta = delta.match_horizon_period(self.horizon_period)
        self.dim_outin = delta.dim_out.copy()
        self.lower_bound = delta.lower_bound.copy()
        self.upper_bound = delta.upper_bound.copy()
        self.rate_bound = delta.rate_bound.copy()

        block = self.basis.block(n)
        self._set_filter(ctrl.append(block, block))
        size = block.noutputs
        for k in range(self.horizon_period.total):
            Q = cvx.Variable((2 * size, 2 * size), symmetric=True)
            self.decision_vars.append(Q)
            self.constraints.append(sym(Q[size:, size:]) << 0)
            for history in self.histories(k):
                for vertex in self._vertices(history):
                    L = np.zeros((2 * size, vertex.size * n))
                    L[:vertex.size * n] = np.eye(vertex.size * n)
                    L[size:size + vertex.size * n] = np.kron(np.diag(vertex), np.eye(n))
                    self.constraints.append(sym(L.T @ Q @ L) >> 0)
            self.quad.append(Q)

    def histories(self, k):
        """
        Step indices (k, k - 1, ...) seen by the filter at step k, for every
        absolute time that maps onto k; shorter near the start of time.
        """
        hp = self.horizon_period
        if k < hp.horizon:
            times = [k]
        else:
            times = [k + j * hp.period for j in range(self.memory // hp.period + 2)]
        return sorted({tuple(effective_index(t - i, hp) for i in range(min(t, self.memory) + 1))
                       for t in times})

    def _vertices(self, history):
        steps = list(history)
        # rate_bound[j] limits the change from step j to the next one
        rate = [self.rate_bound[j] for j in steps[1:]]
        vertices = _polytope_vertices(self.lower_bound[steps], self.upper_bound[steps], rate)
        if not vertices:
            raise ConstructionError(
                f"The bounds of {self.name} over steps {steps} cannot be met under its rate bound")
        return vertices


class MultiplierDlti(BasisMultiplier):
    """Multiplier of a norm-bounded LTI block: Psi^*(u^2 X (x) I) Psi on z minus Psi^*(X (x) I) Psi on w."""

    default_q11_kyp = True
    _step_attributes = Multiplier._step_attributes + ('dim_in', 'dim_out', 'upper_bound')

    def __init__(self, delta, discrete=True, **options):
        if options.get('block_realization') is not None:
            raise UnsupportedFeatureError("MultiplierDlti requires a scalar basis, not a block_realization")
        super().__init__(delta.name, delta.horizon_period, discrete, dim=1, **options)
        self.dim_in = delta.dim_in.copy()
        self.dim_out = delta.dim_out.copy()
        self.upper_bound = delta.upper_bound.copy()

        n_in, n_out = int(self.dim_in[0]), int(self.dim_out[0])
        scalar = self.basis_realization
        self._set_filter(ctrl.append(self.basis.block(n_in), self.basis.block(n_out)))
        L = scalar.noutputs
        X = cvx.Variable((L, L), symmetric=True)
        self.decision_vars.append(X)
        self.constraints += self._positive(scalar, X)
        gain = self.upper_bound[0] ** 2
        quad = cvx.bmat([[gain * _kron_eye(X, n_in), np.zeros((L * n_in, L * n_out))],
                         [np.zeros((L * n_out, L * n_in)), -_kron_eye(X, n_out)]])
        self.quad = [quad] * self.horizon_period.total


class MultiplierBounded(Multiplier):
    """x * (u[k]^2 |z[k]|^2 - |w[k]|^2) with one scalar x >= 0 over all steps."""

    _step_attributes = Multiplier._step_attributes + ('dim_in', 'dim_out', 'upper_bound')

    def __init__(self, delta, discrete=True, **options):
        if options:
            raise UnsupportedFeatureError(f"{type(self).__name__} takes no basis options, got {sorted(options)}")
        super().__init__(delta.name, delta.horizon_period, discrete)
        self.dim_in = delta.dim_in.copy()
        self.dim_out = delta.dim_out.copy()
        self.upper_bound = delta.upper_bound.copy()

        x = cvx.Variable(nonneg=True)
        self.decision_vars.append(x)
        for k in range(self.horizon_period.total):
            n_in, n_out = int(self.dim_in[k]), int(self.dim_out[k])
            self.filter_a.append(np.zeros((0, 0)))
            self.filter_b.append(np.zeros((0, n_in + n_out)))
            self.filter_c.append(np.zeros((n_in + n_out, 0)))
            self.filter_d.append(np.eye(n_in + n_out))
            self.quad.append(x * linalg.block_diag(self.upper_bound[k] ** 2 * np.eye(n_in), -np.eye(n_out)))


class MultiplierSectorBounded(Multiplier):
    """
    Sector IQC: 2 (beta z - w)' Lambda (w - alpha z) >= 0 channel-wise, with a
    non-negative diagonal Lambda chosen per step.
    """

    _step_attributes = Multiplier._step_attributes + ('dim_outin', 'lower_bound', 'upper_bound')

    def __init__(self, delta, discrete=True, **options):
        if options:
            raise UnsupportedFeatureError(f"{type(self).__name__} takes no basis options, got {sorted(options)}")
        super().__init__(delta.name, delta.horizon_period, discrete)
        self.dim_outin = delta.dim_out.copy()
        self.lower_bound = delta.lower_bound.copy()
        self.upper_bound = delta.upper_bound.copy()

        for k in range(self.horizon_period.total):
            n = int(self.dim_outin[k])
            I = np.eye(n)
            D_psi = np.block([[self.upper_bound[k] * I, -I],
                              [-self.lower_bound[k] * I, I]])
            lambda_var = cvx.Variable(n, nonneg=True)
            self.decision_vars.append(lambda_var)
            Lam = cvx.diag(lambda_var)
            M = cvx.bmat([[np.zeros((n, n)), Lam], [Lam, np.zeros((n, n))]])
            self.filter_a.append(np.zeros((0, 0)))
            self.filter_b.append(np.zeros((0, 2 * n)))
            self.filter_c.append(np.zeros((2 * n, 0)))
            self.filter_d.append(D_psi)
            self.quad.append(M)


class MultiplierConstantDelay(BasisMultiplier):
    """
    Multiplier of a constant delay of at most delay_max steps (or seconds):

    psi = [Psi z; Psi w; Psi W z] with |e^{-j w tau} - 1| <= |W| and
    quad = [[X - Y, Y, 0], [Y, -X - Y, 0], [0, 0, Y]].
    """

    default_q11_kyp = True
    _step_attributes = Multiplier._step_attributes + ('delay_max',)

    def __init__(self, delta, discrete=True, **options):
        self.dim_outin = int(delta.dim_out[0])
        super().__init__(delta.name, delta.horizon_period, discrete, dim=self.dim_outin, **options)
        self.delay_max = delta.delay_max.copy()
        n = self.dim_outin

        tau = float(np.max(self.delay_max))
        dt = True if discrete else 0
        if tau == 0:
            weight = static_ss(np.zeros((n, n)), dt)
        elif discrete:
            weight = kron_realization(ctrl.ss(ctrl.tf([tau, -tau], [1, 0], dt)), n)
        else:
            weight = kron_realization(ctrl.ss(ctrl.tf([2.2 * tau, 0], [tau, 1])), n)
        self.weight = weight

        block = self.basis.block(n)
        self.block = block
        # inputs of the appended system are [z; w; z]
        appended = ctrl.append(block, block, ctrl.series(weight, block))
        A, B, C, D = ctrl.ssdata(appended)
        I, O = np.eye(n), np.zeros((n, n))
        duplicate = np.block([[I, O], [O, I], [I, O]])
        self._set_filter(ctrl.ss(A, B @ duplicate, C, D @ duplicate, dt=appended.dt))

        size = block.noutputs
        X = cvx.Variable((size, size), symmetric=True)
        Y = cvx.Variable((size, size), symmetric=True)
        self.decision_vars += [X, Y]
        self.constraints += self._positive(block, Y)
        zero = np.zeros((size, size))
        quad = cvx.bmat([[X - Y, Y, zero],
                         [Y, -X - Y, zero],
                         [zero, zero, Y]])
        self.quad = [quad] * self.horizon_period.total

    @property
    def dim_in(self):
        return self.dim_outin


class MultiplierConstantWindow(Multiplier):
    """
    d[k] - d[k-1] == 0 at the flagged steps, expressed with the filter state
    s[k] = d[k-1]: psi = [s; d] and quad[k] = T' S[k] + S[k]' T with
    T = [-I, I] and a free S[k] (zero where the window does not apply).

    The multiplier is one step longer than its disturbance: step 0 has no
    previous value and is never constrained.
    """

    _step_attributes = Multiplier._step_attributes + ('window',)

    def __init__(self, disturbance, discrete=True, num_inputs=None, **options):
        if not discrete:
            raise UnsupportedFeatureError("Constant-window disturbances are only supported in discrete time")
        if options:
            raise UnsupportedFeatureError(f"{type(self).__name__} takes no basis options, got {sorted(options)}")
        hp = disturbance.horizon_period
        super().__init__(disturbance.name, (hp.horizon + 1, hp.period), discrete)
        self.disturbance = disturbance.match_horizon_period(self.horizon_period)
        total = self.horizon_period.total

        # flag t of the disturbance constrains the transition into step t + 1
        self.window = np.zeros(total, dtype=bool)
        for k in range(1, total):
            self.window[k] = disturbance.window[effective_index(k - 1, hp)]

        sizes = {None if c is None else c.size for c in self.disturbance.chan_in}
        if len(sizes) != 1:
            raise DimensionError(f"Disturbance {self.name} must act on the same number of channels at every step")
        n = sizes.pop()
        if n is None:
            n = num_inputs
        if n is None:
            raise DimensionError(f"The number of inputs of disturbance {self.name} is unknown")
        self.num_channels = n

        I = np.eye(n)
        T = np.hstack([-I, I])
        self._set_filter(ctrl.ss(np.zeros((n, n)), I, np.vstack([I, np.zeros((n, n))]),
                                 np.vstack([np.zeros((n, n)), I]), dt=True))
        for k in range(total):
            if self.window[k]:
                S = cvx.Variable((n, 2 * n))
                self.decision_vars.append(S)
                self.quad.append(T.T @ S + S.T @ T)
            else:
                self.quad.append(np.zeros((2 * n, 2 * n)))

    def match_horizon_period(self, horizon_period):
        new = super().match_horizon_period(horizon_period)
        new.disturbance = self.disturbance.match_horizon_period(new.horizon_period)
        return new
