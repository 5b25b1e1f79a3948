import pytest

from ltviqc.delta import DeltaDelayZ, DeltaIntegrator, DeltaSectorBounded
from ltviqc.errors import ConstructionError
from ltviqc.generators import DELTA_KINDS, random_delta, random_lft


@pytest.mark.parametrize('kind', sorted(DELTA_KINDS))
def test_random_delta(kind, rng):
    hp = (0, 1) if kind == 'DeltaIntegrator' else (1, 2)
    dlt = random_delta(kind, 'x', hp, rng)
    assert type(dlt).__name__ == kind
    assert dlt.horizon_period == hp


def test_random_lft(rng):
    lft = random_lft((2, 3), ['DeltaDelayZ', 'DeltaSltv'], num_deltas=4, rng=rng, dim_in=2, dim_out=3)
    assert lft.horizon_period == (2, 3)
    assert len(lft.delta) == 4
    assert isinstance(lft.delta[0], DeltaDelayZ)
    assert lft.dim_in.tolist() == [2] * 5
    assert lft.dim_out.tolist() == [3] * 5


def test_random_continuous_lft(rng):
    lft = random_lft(req_deltas=['DeltaIntegrator', 'DeltaSlti'], rng=rng)
    assert lft.timestep == 0
    assert isinstance(lft.delta[0], DeltaIntegrator)


def test_random_errors(rng):
    with pytest.raises(ConstructionError):
        random_delta('DeltaUnknown')
    with pytest.raises(ConstructionError):
        random_lft(req_deltas=['DeltaSlti', 'DeltaSltv'], num_deltas=1, rng=rng)
    with pytest.raises(ConstructionError):
        random_lft((1, 1), timestep=0, rng=rng)
    with pytest.raises(ConstructionError):
        random_lft(req_deltas=['DeltaDelayZ', 'DeltaIntegrator'], rng=rng)
    with pytest.raises(ConstructionError):
        random_lft(req_deltas=['DeltaDelayZ'], timestep=0, rng=rng)


def test_random_lft_with_preconfigured_delta(rng):
    sector = DeltaSectorBounded('sb', 2, -0.3, 0.7)
    lft = random_lft((0, 2), ['DeltaBounded', sector, 'DeltaSltvRateBnd'], num_deltas=4, rng=rng)
    assert len(lft.delta) == 4
    assert lft.horizon_period == (0, 2)
    kept = lft.delta[lft.delta_index('sb')]
    assert isinstance(kept, DeltaSectorBounded)
    assert kept.dim_out.tolist() == [2, 2]
    assert kept.lower_bound.tolist() == [-0.3, -0.3]
