import numpy as np
import pytest

from ltviqc.errors import DimensionError
from ltviqc.horizon_period import (HorizonPeriod, as_horizon_period, common_horizon_period,
                                   effective_index, expand_sequence, per_step)


def test_default_and_total():
    hp = as_horizon_period(None)
    assert hp == (0, 1)
    assert HorizonPeriod(3, 4).total == 7


@pytest.mark.parametrize("bad", [(-1, 1), (0, 0), (1, 2, 3), "hp"])
def test_invalid_horizon_period(bad):
    with pytest.raises(DimensionError):
        as_horizon_period(bad)


def test_effective_index():
    hp = HorizonPeriod(2, 3)
    assert [effective_index(i, hp) for i in range(9)] == [0, 1, 2, 3, 4, 2, 3, 4, 2]


def test_common_horizon_period():
    assert common_horizon_period((1, 2), (3, 3), (0, 4)) == (3, 12)
    assert common_horizon_period() == (0, 1)


def test_expand_sequence_keeps_semantics():
    old, new = HorizonPeriod(1, 2), HorizonPeriod(3, 4)
    seq = np.array([10, 20, 30])
    expanded = expand_sequence(seq, old, new)
    assert expanded.tolist() == [10, 20, 30, 20, 30, 20, 30]
    for i in range(20):
        assert expanded[effective_index(i, new)] == seq[effective_index(i, old)]


def test_expand_sequence_of_lists():
    assert expand_sequence(['a'], (0, 1), (2, 2)) == ['a'] * 4


def test_expand_sequence_rejects_incompatible():
    with pytest.raises(DimensionError):
        expand_sequence([1, 2, 3], (1, 2), (0, 2))
    with pytest.raises(DimensionError):
        expand_sequence([1, 2, 3], (1, 2), (1, 3))
    with pytest.raises(DimensionError):
        expand_sequence([1, 2], (1, 2), (1, 4))


def test_per_step():
    assert per_step(2, (1, 2), 'x').tolist() == [2, 2, 2]
    assert per_step([1, 2, 3], (1, 2), 'x').tolist() == [1, 2, 3]
    with pytest.raises(DimensionError):
        per_step([1, 2], (1, 2), 'x')


def test_add_increments():
    assert HorizonPeriod(4, 1) + (1, 0) == (5, 1)
    assert HorizonPeriod(1, 2) + np.array([0, 2]) == (1, 4)
    with pytest.raises(DimensionError):
        HorizonPeriod(1, 2) + (1, 2, 3)
    with pytest.raises(DimensionError):
        HorizonPeriod(0, 1) + (0, -1)
