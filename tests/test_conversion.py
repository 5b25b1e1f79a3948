import numpy as np
import control as ctrl
import pytest

from ltviqc.conversion import UncertainSystem, control_to_lft, lft_to_control
from ltviqc.delta import DeltaDelayZ, DeltaDlti, DeltaSlti, DeltaSltv
from ltviqc.errors import NotFoundError, UnsupportedFeatureError
from ltviqc.generators import random_lft
from ltviqc.ulft import Ulft
from ltviqc.utils import frequency_response_difference, hinf_norm


def test_lft_to_control(first_order):
    lft = Ulft.from_ss(first_order) * DeltaSlti('p', 1, -1, 2)
    usys, delta_map = lft_to_control(lft)
    assert isinstance(usys, UncertainSystem)
    assert delta_map == {}
    assert (usys.ninputs, usys.noutputs) == (1, 1)
    assert usys.nominal.nstates == 1
    block = usys.uncertainty['p']
    assert block.kind == 'ureal'
    assert block.size == (1, 1)
    assert block.range == (-1.0, 2.0)
    assert frequency_response_difference(usys.substitute({'p': 0.5}), 0.5 * first_order) < 1e-10


def test_block_kinds():
    lft = DeltaDlti('a', 2, 3, 0.5) + np.zeros((2, 3)) * DeltaSltv('b', 3)
    usys, delta_map = lft_to_control(lft)
    kinds = {blk.name: (blk.kind, blk.size, blk.bound) for blk in usys.blocks}
    assert kinds == {'a': ('ultidyn', (2, 3), 0.5), 'b': ('udyn', (3, 3), None)}
    assert list(delta_map) == ['b']
    assert delta_map['b'] is lft.delta[lft.delta_index('b')]


def test_round_trip(rng):
    lft = random_lft((0, 1), ['DeltaSlti', 'DeltaSltv', 'DeltaDelayZ'], rng=rng)
    back = control_to_lft(*lft_to_control(lft))
    assert [type(dlt) for dlt in back.delta] == [type(dlt) for dlt in lft.delta]
    assert back.delta[1] == lft.delta[1]

    names = [dlt.name for dlt in lft.delta if not dlt.is_state]
    samples = [0.3 * np.eye(int(lft.delta[lft.delta_index(name)].dim_out[0])) for name in names]
    original = lft.sample_deltas(names, samples).to_ss()
    converted = back.sample_deltas(names, samples).to_ss()
    assert frequency_response_difference(original, converted) < 1e-8


@pytest.mark.parametrize('state', ['DeltaDelayZ', 'DeltaIntegrator'])
def test_substitute_matches_sampled_lft(state, rng):
    lft = random_lft((0, 1), ['DeltaDlti', 'DeltaSlti', state], rng=rng)
    usys, delta_map = lft_to_control(lft)
    assert delta_map == {}

    names, lft_samples, values = [], [], {}
    for dlt in lft.delta:
        if dlt.is_state:
            continue
        if isinstance(dlt, DeltaSlti):
            value = rng.uniform(dlt.lower_bound[0], dlt.upper_bound[0])
            sample = value * np.eye(int(dlt.dim_out[0]))
        else:
            sample = dlt.sample(lft.timestep, rng=rng)
            value = sample.to_ss()
        names.append(dlt.name)
        lft_samples.append(sample)
        values[dlt.name] = value

    reference = lft.sample_deltas(names, lft_samples).to_ss()
    substituted = usys.substitute(values)
    assert (substituted.noutputs, substituted.ninputs) == (reference.noutputs, reference.ninputs)
    assert frequency_response_difference(substituted, reference) < 1e-4 * max(hinf_norm(reference), 1.0)


def test_round_trip_without_deltas(rng):
    lft = random_lft((0, 1), num_deltas=0, rng=rng)
    assert not lft.delta
    usys, _ = lft_to_control(lft)
    assert not usys.blocks
    back = control_to_lft(usys)
    assert not back.delta
    assert back.d[0].shape == lft.d[0].shape
    np.testing.assert_array_equal(back.d[0], lft.d[0])


def test_substitute():
    lft = DeltaSlti('p', 2) * DeltaSltv('q', 2)
    usys, _ = lft_to_control(lft)
    sys = usys.substitute({'p': 0.5, 'q': np.diag([1.0, -1.0])})
    np.testing.assert_allclose(ctrl.ssdata(sys)[3], np.diag([0.5, -0.5]))
    with pytest.raises(NotFoundError):
        usys.substitute({'p': 0.5})


def test_conversion_errors(first_order):
    with pytest.raises(TypeError):
        lft_to_control(first_order)
    with pytest.raises(UnsupportedFeatureError):
        lft_to_control(Ulft.from_ss(first_order, (1, 1)))
    usys, _ = lft_to_control(DeltaSltv('q').to_lft())
    with pytest.raises(UnsupportedFeatureError):
        control_to_lft(usys)
    with pytest.raises(TypeError):
        control_to_lft('q')


def test_control_to_lft_plain_system(first_order):
    lft = control_to_lft(first_order)
    assert isinstance(lft.delta[0], DeltaDelayZ)
    assert frequency_response_difference(lft.to_ss(), first_order) < 1e-10
