import numpy as np
import control as ctrl
import pytest
from scipy import signal

from ltviqc.analysis import AnalysisOptions, AnalysisResult, iqc_analysis
from ltviqc.delta import (DeltaBounded, DeltaConstantDelay, DeltaDelayZ, DeltaDlti, DeltaSectorBounded,
                          DeltaSlti, DeltaSltv, DeltaSltvRateBnd)
from ltviqc.errors import NotFoundError, UnsupportedFeatureError
from ltviqc.multiplier import MultiplierSlti
from ltviqc.ulft import Ulft


def test_nominal_discrete(first_order):
    result = iqc_analysis(Ulft.from_ss(first_order))
    assert isinstance(result, AnalysisResult)
    assert result.valid
    assert result.performance == pytest.approx(2, rel=1e-3)
    assert result.decision_vars['gamma_squared'] == pytest.approx(4, rel=2e-3)
    assert len(result.decision_vars['storage']) == 1


def test_nominal_continuous():
    result = iqc_analysis(Ulft.from_ss(ctrl.ss(-1, 1, 1, 0)))
    assert result.valid
    assert result.performance == pytest.approx(1, rel=1e-3)


def test_periodic_gain():
    result = iqc_analysis(Ulft.from_matrix([1.0, 2.0, 3.0], (0, 3)))
    assert result.valid
    assert result.performance == pytest.approx(3, rel=1e-3)


@pytest.mark.parametrize('delta, expected', [
    (DeltaSlti('p'), 1),
    (DeltaSltv('p'), 1),
    (DeltaSltv('p', 1, [-1, -2], [1, 2], (0, 2)), 2),
    (DeltaBounded('p'), 1),
    (DeltaSectorBounded('p', 1, 0, 1), 1),
    (DeltaConstantDelay('p', 1, 2), 1),
    (DeltaDlti('p', 1, 1, 0.5), 0.5),
])
def test_uncertain_gain(delta, expected):
    result = iqc_analysis(delta.to_lft())
    assert result.valid
    assert result.performance == pytest.approx(expected, rel=1e-2)
    assert 'p' in result.decision_vars


def test_uncertain_dynamic(first_order):
    lft = Ulft.from_ss(first_order) * DeltaSlti('p')
    result = iqc_analysis(lft)
    assert result.valid
    assert result.performance == pytest.approx(2, rel=1e-2)


def test_given_multiplier(first_order):
    delta = DeltaSlti('p')
    lft = Ulft.from_ss(first_order) * delta
    result = iqc_analysis(lft, multipliers_delta=[MultiplierSlti(delta, basis_length=3)])
    assert result.valid
    assert result.performance == pytest.approx(2, rel=1e-2)
    with pytest.raises(NotFoundError):
        iqc_analysis(lft, multipliers_delta=[MultiplierSlti(DeltaSlti('q'))])


def test_butterworth_high_pass():
    num, den = signal.butter(4, 0.8, 'high')
    result = iqc_analysis(Ulft.from_ss(ctrl.tf(num, den, True)),
                          AnalysisOptions(lmi_shift=1e-7))
    assert result.valid
    assert result.performance == pytest.approx(1, rel=1e-2)


def test_bisection(first_order):
    lft = Ulft.from_ss(first_order)
    result = iqc_analysis(lft, AnalysisOptions(search='bisection', gamma_max=10, gamma_tol=1e-3))
    assert result.valid
    assert result.performance == pytest.approx(2, abs=2e-3)

    result = iqc_analysis(lft, AnalysisOptions(search='bisection', gamma_max=1))
    assert not result.valid
    assert np.isnan(result.performance)
    assert result.decision_vars == {}


def test_options():
    with pytest.raises(ValueError):
        AnalysisOptions(search='newton')
    with pytest.raises(ValueError):
        AnalysisOptions(lmi_shift=-1)


def test_unsupported_inputs(first_order):
    with pytest.raises(TypeError):
        iqc_analysis(first_order)
    with pytest.raises(UnsupportedFeatureError):
        iqc_analysis(Ulft.from_matrix(1.0, (1, 1), timestep=0))


def test_unstable_nominal_is_not_certified():
    result = iqc_analysis(Ulft.from_ss(ctrl.ss(2.0, 1, 1, 0, True)))
    assert not result.valid
    assert result.status == 'unstable'
    assert np.isnan(result.performance)
    assert result.decision_vars == {}

    result = iqc_analysis(Ulft.from_ss(ctrl.ss(1.0, 1, 1, 0)))
    assert not result.valid
    assert result.status == 'unstable'

    # the uncertain channel is zeroed in the nominal system
    lft = Ulft.from_ss(ctrl.ss(2.0, 1, 1, 0, True)) * DeltaSlti('p', 1, 0, 0.1)
    assert iqc_analysis(lft).status == 'unstable'


def test_periodic_state_stability():
    # x[k + 1] alternates between 2 x[k] and 0.1 x[k]: unstable steps, stable period
    lft = Ulft([2.0, 0.1], 1.0, 1.0, 0.0, delta=DeltaDelayZ(1, -1, (0, 2)), horizon_period=(0, 2))
    result = iqc_analysis(lft)
    assert result.valid
    assert np.isfinite(result.performance)

    lft = Ulft([2.0, 0.6], 1.0, 1.0, 0.0, delta=DeltaDelayZ(1, -1, (0, 2)), horizon_period=(0, 2))
    assert iqc_analysis(lft).status == 'unstable'


def test_solver_error_is_reported_once(first_order):
    options = AnalysisOptions(solver='NOT_A_SOLVER')
    with pytest.warns(UserWarning, match='NOT_A_SOLVER') as record:
        result = iqc_analysis(Ulft.from_ss(first_order), options)
    assert sum('NOT_A_SOLVER' in str(w.message) for w in record) == 1
    assert not result.valid
    assert result.status == 'solver_error'
    assert np.isnan(result.performance)


def test_rate_bound_tightens_the_bound():
    # 1 / (z - 0.5) peaks at z = 1, 1 / (z + 0.5) at z = -1: a parameter
    # switching sign every step moves the energy from one peak to the other
    low_pass = Ulft.from_ss(ctrl.ss(0.5, 1, 1, 0, True))
    high_pass = Ulft.from_ss(ctrl.ss(-0.5, 1, 1, 0, True))

    def bound(delta):
        result = iqc_analysis(high_pass * delta * low_pass)
        assert result.valid
        return result.performance

    fast = bound(DeltaSltv('p'))
    frozen = bound(DeltaSltvRateBnd('p', 1, -1, 1, 0))
    slow = bound(DeltaSltvRateBnd('p', 1, -1, 1, 0.5))
    free = bound(DeltaSltvRateBnd('p', 1, -1, 1, 2))

    # p[k] = (-1)^k drives the gain towards 2 * 2
    assert fast > 4 * (1 - 1e-2)
    # constant p = 1 reaches 1 / |1 - 0.25| at z = 1
    assert frozen > 4 / 3 * (1 - 1e-3)
    assert frozen < 0.9 * fast
    assert frozen <= slow * (1 + 1e-3)
    assert slow <= free * (1 + 1e-3)
    assert free <= fast * (1 + 1e-3)
