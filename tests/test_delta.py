import numpy as np
import pytest

from ltviqc.delta import (DeltaBounded, DeltaConstantDelay, DeltaDelayZ, DeltaDlti, DeltaIntegrator,
                          DeltaSectorBounded, DeltaSlti, DeltaSltv, DeltaSltvRateBnd)
from ltviqc.errors import (ConstructionError, DimensionError, InvalidSampleError,
                           TimeDomainMismatchError, UnsupportedFeatureError)
from ltviqc.multiplier import (MultiplierBounded, MultiplierConstantDelay, MultiplierDlti,
                               MultiplierSectorBounded, MultiplierSlti, MultiplierSltv,
                               MultiplierSltvRateBnd)
from ltviqc.ulft import Ulft


UNCERTAIN = [DeltaSlti, DeltaSltv, DeltaSltvRateBnd, DeltaDlti, DeltaBounded, DeltaSectorBounded,
             DeltaConstantDelay]


@pytest.mark.parametrize("cls", UNCERTAIN)
def test_name_is_required(cls):
    with pytest.raises(ConstructionError):
        cls()


@pytest.mark.parametrize("cls", UNCERTAIN)
def test_defaults(cls):
    d = cls('test')
    assert d.name == 'test'
    assert d.horizon_period == (0, 1)
    assert d.dim_out.tolist() == [1]
    assert d.dim_in.tolist() == [1]
    assert 'test' in repr(d)


def test_full_constant_delay_constructor(rng):
    dim_outin = int(rng.integers(1, 11))
    delay_max = int(rng.integers(1, 11))
    hp = (int(rng.integers(0, 11)), int(rng.integers(1, 11)))
    d = DeltaConstantDelay('test', dim_outin, delay_max, hp)
    total = sum(hp)
    assert d.dim_out.tolist() == [dim_outin] * total
    assert d.dim_in.tolist() == [dim_outin] * total
    assert d.delay_max.tolist() == [delay_max] * total
    assert d.horizon_period == hp


def test_bad_arguments():
    with pytest.raises(ConstructionError):
        DeltaSlti('a', 0)
    with pytest.raises(ConstructionError):
        DeltaSltv('a', 1, lower_bound=1, upper_bound=-1)
    with pytest.raises(ConstructionError):
        DeltaBounded('a', upper_bound=-1)
    with pytest.raises(ConstructionError):
        DeltaConstantDelay('a', delay_max=-1)
    with pytest.raises(DimensionError):
        DeltaSltv('a', 1, lower_bound=[-1, -2], horizon_period=(0, 3))
    with pytest.raises(ConstructionError):
        # a time-invariant parameter cannot have per-step bounds
        DeltaSlti('a', 1, upper_bound=[1, 2], horizon_period=(0, 2))


def test_match_horizon_period():
    d = DeltaSltv('a', 2, lower_bound=[-1, -2, -3], upper_bound=[1, 2, 3], horizon_period=(1, 2))
    e = d.match_horizon_period((2, 4))
    assert e.horizon_period == (2, 4)
    assert e.upper_bound.tolist() == [1, 2, 3, 2, 3, 2]
    assert e.dim_out.tolist() == [2] * 6
    # the original is untouched
    assert d.upper_bound.tolist() == [1, 2, 3]
    with pytest.raises(DimensionError):
        d.match_horizon_period((0, 2))


def test_delay_z_dimensions_follow_the_state():
    d = DeltaDelayZ([1, 2, 3], horizon_period=(1, 2))
    assert d.name == 'z'
    assert d.dim_out.tolist() == [1, 2, 3]
    assert d.dim_in.tolist() == [2, 3, 2]
    with pytest.raises(TimeDomainMismatchError):
        DeltaDelayZ(1, timestep=0)


def test_integrator_is_time_invariant():
    with pytest.raises(UnsupportedFeatureError):
        DeltaIntegrator(1, horizon_period=(0, 2))
    assert DeltaIntegrator(2).to_lft().timestep == 0


def test_merge():
    d = DeltaSlti('a', 2).merge(DeltaSlti('a', 3))
    assert d.dim_out.tolist() == [5]
    with pytest.raises(ConstructionError):
        DeltaSlti('a', upper_bound=1).merge(DeltaSlti('a', upper_bound=2))
    with pytest.raises(ConstructionError):
        DeltaSlti('a').merge(DeltaSltv('a'))


def test_to_lft():
    lft = DeltaBounded('b', 2, 3).to_lft()
    assert lft.a[0].shape == (3, 2)
    assert lft.b[0].shape == (3, 3)
    assert lft.c[0].shape == (2, 2)
    assert lft.d[0].shape == (2, 3)
    assert lft.delta[0].name == 'b'


SAMPLED = [
    lambda: DeltaSlti('a', 3, -0.5, 2),
    lambda: DeltaSltv('a', 2, [-1, -2, 0], [1, 0, 0.5], (1, 2)),
    lambda: DeltaSltvRateBnd('a', 2, -1, 1, 0.1, (2, 3)),
    lambda: DeltaDlti('a', 2, 3, 0.7),
    lambda: DeltaBounded('a', [1, 2], [3, 1], [0.5, 2], (0, 2)),
    lambda: DeltaSectorBounded('a', 3, [0, 0.5], [1, 2], (1, 1)),
    lambda: DeltaConstantDelay('a', 2, 4),
]


@pytest.mark.parametrize("make", SAMPLED)
def test_samples_are_valid(make, rng):
    d = make()
    for _ in range(3):
        sample = d.sample(-1, rng)
        assert isinstance(sample, Ulft)
        d.validate_sample(sample, -1)


def test_invalid_samples_are_rejected():
    d = DeltaSlti('a', 2, -1, 1)
    with pytest.raises(InvalidSampleError):
        d.validate_sample(Ulft.from_matrix(2 * np.eye(2)))
    with pytest.raises(InvalidSampleError):
        d.validate_sample(Ulft.from_matrix(np.diag([0.1, 0.2])))
    with pytest.raises(InvalidSampleError):
        DeltaSltv('a', 1, -1, 1, (0, 2)).validate_sample(Ulft.from_matrix([0.5, 1.5], (0, 2)))
    with pytest.raises(InvalidSampleError):
        DeltaSltvRateBnd('a', 1, -1, 1, 0.1, (0, 2)).validate_sample(Ulft.from_matrix([0.5, -0.5], (0, 2)))
    with pytest.raises(InvalidSampleError):
        DeltaBounded('a', 1, 1, 0.5).validate_sample(Ulft.from_matrix(0.8))
    with pytest.raises(InvalidSampleError):
        DeltaSectorBounded('a', 2, 0, 1).validate_sample(Ulft.from_matrix(np.array([[0.5, 0.1], [0, 0.5]])))
    with pytest.raises(InvalidSampleError):
        DeltaConstantDelay('a').validate_sample(Ulft.from_matrix(0.5))


def test_constant_delay_sample_is_a_delay(rng):
    d = DeltaConstantDelay('a', 1, 3)
    sample = d.sample(-1, rng)
    impulse = np.zeros((1, 6))
    impulse[0, 0] = 1
    response = sample.simulate(impulse).ravel()
    assert np.count_nonzero(response) == 1
    assert np.argmax(response) <= 3


def test_constant_delay_cannot_be_sampled_in_continuous_time():
    with pytest.raises(UnsupportedFeatureError):
        DeltaConstantDelay('a').sample(0)


@pytest.mark.parametrize("delta, multiplier, horizon_period", [
    (DeltaSlti('a'), MultiplierSlti, (0, 1)),
    (DeltaSltv('a'), MultiplierSltv, (0, 1)),
    # one step of history needs one step of horizon
    (DeltaSltvRateBnd('a'), MultiplierSltvRateBnd, (1, 1)),
    (DeltaDlti('a'), MultiplierDlti, (0, 1)),
    (DeltaBounded('a'), MultiplierBounded, (0, 1)),
    (DeltaSectorBounded('a'), MultiplierSectorBounded, (0, 1)),
    (DeltaConstantDelay('a'), MultiplierConstantDelay, (0, 1)),
])
def test_to_multiplier(delta, multiplier, horizon_period):
    m = delta.to_multiplier()
    assert type(m) is multiplier
    assert m.name == delta.name
    assert m.horizon_period == horizon_period


def test_states_have_no_multiplier():
    with pytest.raises(UnsupportedFeatureError):
        DeltaDelayZ().to_multiplier()


def test_delta_algebra_builds_lfts():
    lft = 2 * DeltaSlti('a') + 1
    assert isinstance(lft, Ulft)
    assert lft.delta[0].name == 'a'
    assert lft.d[0].tolist() == [[1.0]]
    assert lft.c[0].tolist() == [[2.0]]
