import warnings
from dataclasses import dataclass, field

import numpy as np
import cvxpy as cvx
from tqdm import tqdm

from .errors import NotFoundError, UnsupportedFeatureError
from .horizon_period import common_horizon_period, effective_index
from .multiplier import sym
from .ulft import Ulft
from .utils import poles_are_stable

## Suppress noisy MOSEK array-format warnings emitted indirectly via CVXPY
warnings.filterwarnings(
    "ignore",
    message=r"Argument sub in putvarboundlist: Incorrect array format causing data to be copied",
    module=r"mosek"
)
warnings.filterwarnings(
    "ignore",
    message=r"Argument subj in putclist: Incorrect array format causing data to be copied",
    module=r"mosek"
)
warnings.filterwarnings(
    "ignore",
    message=r"Argument sub in putconboundlist: Incorrect array format causing data to be copied",
    module=r"mosek"
)

PREFERRED_SOLVERS = ('MOSEK', 'CLARABEL', 'SCS')


@dataclass(frozen=True)
class AnalysisOptions:
    """
    verbose: print progress and solver output.
    lmi_shift: margin of the strict dissipation inequality.
    solver: cvxpy solver name; by default the first installed of MOSEK, CLARABEL, SCS.
    search: "direct" minimizes gamma^2, "bisection" bisects on gamma.
    """
    verbose: bool = False
    lmi_shift: float = 1e-6
    solver: str = None
    solver_options: dict = field(default_factory=dict)
    search: str = 'direct'
    gamma_max: float = 1e3
    gamma_tol: float = 1e-4

    def __post_init__(self):
        if self.search not in ('direct', 'bisection'):
            raise ValueError(f"search must be 'direct' or 'bisection', got {self.search!r}")
        if self.lmi_shift < 0:
            raise ValueError("lmi_shift must be non-negative")


@dataclass
class AnalysisResult:
    performance: float = np.nan
    valid: bool = False
    status: str = None
    decision_vars: dict = field(default_factory=dict)


def _solver(options):
    if options.solver is not None:
        return options.solver
    installed = cvx.installed_solvers()
    return next((s for s in PREFERRED_SOLVERS if s in installed), None)


class IqcAnalysis:
    """
    Worst-case induced l2 (or L2) gain bound of a Ulft:

        configure -> build_multipliers -> align -> assemble_lmi -> solve -> extract

    Discrete-time Ulfts use a periodic storage function P[k], P[H + P] = P[H];
    continuous-time Ulfts must be time-invariant.
    """

    def __init__(self, lft, analysis_options=None, multipliers_delta=None, multipliers_disturbance=None):
        self.lft = lft
        self.options = analysis_options
        self.multipliers_delta = multipliers_delta
        self.multipliers_disturbance = multipliers_disturbance
        self.multipliers = []
        self.constraints = []
        self.storage = []
        self.gamma_squared = None
        self.problem = None

    def _log(self, message):
        if self.options.verbose:
            print(message)

    def run(self):
        self.configure()
        self.build_multipliers()
        self.align()
        if self.check_nominal_stability():
            self.assemble_lmi()
            self.solve()
        return self.extract()

    def configure(self):
        if not isinstance(self.lft, Ulft):
            raise TypeError(f"iqc_analysis expects a Ulft, got {type(self.lft).__name__}")
        if self.options is None:
            self.options = AnalysisOptions()
        self.discrete = self.lft.timestep != 0
        if not self.discrete and self.lft.horizon_period != (0, 1):
            raise UnsupportedFeatureError("Continuous-time analysis requires a time-invariant Ulft")
        states = [dlt for dlt in self.lft.delta if dlt.is_state]
        if len(states) > 1:
            raise UnsupportedFeatureError(f"Ulft has more than one state Delta: {[s.name for s in states]}")
        self._log(f"Analyzing {self.lft!r}")

    @staticmethod
    def _by_name(multipliers, names, kind):
        given = {m.name: m for m in (multipliers or [])}
        unknown = set(given) - set(names)
        if unknown:
            raise NotFoundError(f"Multipliers {sorted(unknown)} do not correspond to any {kind}")
        return given

    def build_multipliers(self):
        lft = self.lft
        uncertain = [dlt for dlt in lft.delta if not dlt.is_state]
        given = self._by_name(self.multipliers_delta, [dlt.name for dlt in uncertain], 'Delta')
        for dlt in uncertain:
            mult = given.get(dlt.name) or dlt.to_multiplier(discrete=self.discrete)
            self.multipliers.append(('delta', mult))

        given = self._by_name(self.multipliers_disturbance, [d.name for d in lft.disturbance], 'disturbance')
        num_inputs = int(lft.dim_in[0])
        for dist in lft.disturbance:
            mult = given.get(dist.name) or dist.to_multiplier(discrete=self.discrete, num_inputs=num_inputs)
            self.multipliers.append(('disturbance', mult))
        self._log(f"Built {len(self.multipliers)} multiplier(s)")

    def align(self):
        """Bring the Ulft and every multiplier to one common horizon_period."""
        hp = common_horizon_period(self.lft.horizon_period, *(m.horizon_period for _, m in self.multipliers))
        self.lft = self.lft.match_horizon_period(hp)
        self.multipliers = [(kind, m.match_horizon_period(hp)) for kind, m in self.multipliers]
        self.horizon_period = hp
        self._log(f"Common horizon_period {list(hp)}")

    def _state_matrices(self):
        lft = self.lft
        state = [i for i, dlt in enumerate(lft.delta) if dlt.is_state]
        if not state:
            return None
        mats = []
        for k in range(self.horizon_period.total):
            rows, cols = lft._slices(k)
            mats.append(lft.a[k][rows[state[0]], cols[state[0]]])
        return mats

    def check_nominal_stability(self):
        """
        Nominal plant (every uncertainty zeroed) must be stable: periodic
        monodromy matrix inside the unit disc, or a Hurwitz A in continuous time.
        Multiplier filters are stable, so this covers the full eta dynamics.
        """
        mats = self._state_matrices()
        if mats is None:
            return True
        hp = self.horizon_period
        if self.discrete:
            monodromy = np.eye(mats[hp.horizon].shape[1])
            for k in range(hp.horizon, hp.total):
                monodromy = mats[k] @ monodromy
            stable = poles_are_stable(np.linalg.eigvals(monodromy), True)
        else:
            stable = poles_are_stable(np.linalg.eigvals(mats[0]), False)
        if not stable:
            self.status = 'unstable'
            self.performance = np.nan
            self._log("Nominal system is unstable, no bound can be certified")
        return stable

    def _step_maps(self, k):
        """
        Affine maps at step k, in terms of [eta; v] with eta = [x; xi_1; ...; xi_N]
        and v = [w_uncertain; u].
        """
        lft = self.lft
        rows, cols = lft._slices(k)
        a, b, c, d = lft.a[k], lft.b[k], lft.c[k], lft.d[k]
        state = [i for i, dlt in enumerate(lft.delta) if dlt.is_state]
        uncertain = [i for i, dlt in enumerate(lft.delta) if not dlt.is_state]
        x_cols = np.arange(cols[state[0]].start, cols[state[0]].stop) if state else np.zeros(0, int)
        w_cols = (np.concatenate([np.arange(cols[i].start, cols[i].stop) for i in uncertain])
                  if uncertain else np.zeros(0, int))
        n_x, n_w, n_u = x_cols.size, w_cols.size, d.shape[1]

        x_next = (np.hstack([a[rows[state[0]]][:, x_cols], a[rows[state[0]]][:, w_cols], b[rows[state[0]]]])
                  if state else np.zeros((0, n_x + n_w + n_u)))
        y_map = np.hstack([c[:, x_cols], c[:, w_cols], d])

        w_pos = {}
        offset = 0
        for i in uncertain:
            size = cols[i].stop - cols[i].start
            w_pos[lft.delta[i].name] = (i, np.arange(offset, offset + size))
            offset += size

        inputs = []
        for kind, mult in self.multipliers:
            if kind == 'delta':
                i, pos = w_pos[mult.name]
                z_map = np.hstack([a[rows[i]][:, x_cols], a[rows[i]][:, w_cols], b[rows[i]]])
                w_sel = np.zeros((pos.size, n_x + n_w + n_u))
                w_sel[np.arange(pos.size), n_x + pos] = 1.0
                inputs.append(np.vstack([z_map, w_sel]))
            else:
                chans = mult.disturbance.channels(k, n_u)
                sel = np.zeros((chans.size, n_x + n_w + n_u))
                sel[np.arange(chans.size), n_x + n_w + chans] = 1.0
                inputs.append(sel)

        n_xi = [m.filter_a[k].shape[1] for _, m in self.multipliers]
        n_eta = n_x + sum(n_xi)
        n_v = n_w + n_u

        # [x; v] in terms of [eta; v]
        to_plant = np.zeros((n_x + n_v, n_eta + n_v))
        to_plant[:n_x, :n_x] = np.eye(n_x)
        to_plant[n_x:, n_eta:] = np.eye(n_v)

        eta_next = [x_next @ to_plant]
        psi = []
        offset = n_x
        for (_, mult), size, inp in zip(self.multipliers, n_xi, inputs):
            place = np.zeros((size, n_eta + n_v))
            place[:, offset:offset + size] = np.eye(size)
            eta_next.append(mult.filter_a[k] @ place + mult.filter_b[k] @ inp @ to_plant)
            psi.append(mult.filter_c[k] @ place + mult.filter_d[k] @ inp @ to_plant)
            offset += size

        E = np.zeros((n_u, n_eta + n_v))
        E[:, n_eta + n_w:] = np.eye(n_u)
        return np.vstack(eta_next), psi, y_map @ to_plant, E, n_eta

    def assemble_lmi(self):
        hp = self.horizon_period
        total = hp.total
        maps = [self._step_maps(k) for k in range(total)]
        sizes = [m[4] for m in maps]
        self.storage = [cvx.Variable((n, n), symmetric=True) if n else None for n in sizes]
        if self.options.search == 'bisection':
            self.gamma_squared = cvx.Parameter(nonneg=True)
        else:
            self.gamma_squared = cvx.Variable(nonneg=True)

        self.constraints = []
        for _, mult in self.multipliers:
            self.constraints += mult.constraints

        for k, (eta_next, psi, y_map, E, n_eta) in enumerate(maps):
            width = eta_next.shape[1]
            if self.discrete:
                nxt = effective_index(k + 1, hp)
                if eta_next.shape[0] != sizes[nxt]:
                    raise UnsupportedFeatureError(
                        f"State dimension {eta_next.shape[0]} after step {k} does not match {sizes[nxt]}")
                P_next, P_k = self.storage[nxt], self.storage[k]
            else:
                P_next = P_k = self.storage[0]

            lmi = y_map.T @ y_map - self.gamma_squared * (E.T @ E)
            if P_k is not None:
                select = np.zeros((n_eta, width))
                select[:, :n_eta] = np.eye(n_eta)
                if self.discrete:
                    lmi = lmi - select.T @ P_k @ select
                    lmi = lmi + eta_next.T @ P_next @ eta_next
                else:
                    lmi = lmi + select.T @ P_k @ eta_next + eta_next.T @ P_k @ select
            elif self.discrete and P_next is not None:
                lmi = lmi + eta_next.T @ P_next @ eta_next
            for (_, mult), psi_map in zip(self.multipliers, psi):
                lmi = lmi + psi_map.T @ mult.quad[k] @ psi_map
            self.constraints.append(sym(lmi) << -self.options.lmi_shift * np.eye(width))
        self._log(f"Assembled {len(self.constraints)} constraint(s) over {total} step(s)")

    def _solve_once(self, problem):
        solver = _solver(self.options)
        try:
            problem.solve(solver=solver, verbose=self.options.verbose, **self.options.solver_options)
        except cvx.SolverError as err:
            warnings.warn(f"Solver {solver} failed: {err}")
            return 'solver_error'
        return problem.status

    def solve(self):
        if self.options.search == 'direct':
            self.problem = cvx.Problem(cvx.Minimize(self.gamma_squared), self.constraints)
            self.status = self._solve_once(self.problem)
            self.performance = (np.sqrt(max(self.gamma_squared.value, 0.0))
                                if self.status == cvx.OPTIMAL and self.gamma_squared.value is not None
                                else np.nan)
            return

        # bisection on gamma
        self.problem = cvx.Problem(cvx.Minimize(0), self.constraints)
        gamma_min, gamma_max = 0.0, self.options.gamma_max
        self.gamma_squared.value = gamma_max ** 2
        self.status = self._solve_once(self.problem)
        if self.status != cvx.OPTIMAL:
            self.performance = np.nan
            return
        steps = int(np.ceil(np.log2(max(gamma_max / self.options.gamma_tol, 2))))
        for _ in tqdm(range(steps), desc="Bisection over gamma", disable=not self.options.verbose):
            if gamma_max - gamma_min <= self.options.gamma_tol:
                break
            gamma = (gamma_min + gamma_max) / 2
            self.gamma_squared.value = gamma ** 2
            if self._solve_once(self.problem) == cvx.OPTIMAL:
                gamma_max = gamma
            else:
                gamma_min = gamma
        # leave the variables at a feasible point
        self.gamma_squared.value = gamma_max ** 2
        self.status = self._solve_once(self.problem)
        self.performance = gamma_max if self.status == cvx.OPTIMAL else np.nan

    def extract(self):
        valid = self.status == cvx.OPTIMAL and bool(np.isfinite(self.performance))
        decision_vars = {}
        if valid:
            decision_vars['gamma_squared'] = float(self.gamma_squared.value)
            decision_vars['storage'] = [None if P is None else P.value for P in self.storage]
            for _, mult in self.multipliers:
                decision_vars[mult.name] = [var.value for var in mult.decision_vars]
        result = AnalysisResult(performance=float(self.performance) if valid else np.nan,
                                valid=valid, status=self.status, decision_vars=decision_vars)
        self._log(f"Status {result.status}, performance {result.performance}")
        return result


def iqc_analysis(lft, analysis_options=None, multipliers_delta=None, multipliers_disturbance=None):
    """Certified upper bound on the worst-case induced gain of `lft`."""
    return IqcAnalysis(lft, analysis_options, multipliers_delta, multipliers_disturbance).run()
