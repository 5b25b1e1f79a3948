import numpy as np
import control as ctrl
import pytest

from ltviqc.errors import ConstructionError, UnsupportedFeatureError
from ltviqc.reachability import generate_reachability_lft
from ltviqc.ulft import Ulft


def test_output_only_at_final_time(first_order):
    reach = generate_reachability_lft(Ulft.from_ss(first_order), 3)
    assert reach.horizon_period == (4, 1)
    # step response of 1 / (z + 0.5) is 0, 1, 0.5, 0.75, ...
    np.testing.assert_allclose(reach.simulate(np.ones(7)), [[0, 0, 0, 0.75, 0, 0, 0]])


def test_horizon_is_kept_when_longer(first_order):
    lft = Ulft.from_ss(first_order, (5, 2))
    reach = generate_reachability_lft(lft, 2)
    assert reach.horizon_period == (5, 2)
    assert not np.any(reach.a[3])
    assert not np.any(reach.c[1])
    np.testing.assert_allclose(reach.c[2], lft.c[2])


def test_errors(first_order):
    lft = Ulft.from_ss(first_order)
    with pytest.raises(TypeError):
        generate_reachability_lft(first_order, 2)
    with pytest.raises(UnsupportedFeatureError):
        generate_reachability_lft(Ulft.from_ss(ctrl.ss(-1, 1, 1, 0)), 2)
    with pytest.raises(ConstructionError):
        generate_reachability_lft(lft, -1)
    with pytest.raises(ConstructionError):
        generate_reachability_lft(lft, 2.5)
