import time

import numpy as np
import control as ctrl
import pytest


@pytest.fixture
def rng():
    seed = int(time.time())
    # shown by pytest when the test fails
    print(f"Random inputs may be regenerated with np.random.default_rng({seed})")
    return np.random.default_rng(seed)


@pytest.fixture
def first_order():
    """G(z) = 1 / (z + 0.5), peak gain 2 at z = -1, DC gain 2/3."""
    return ctrl.ss(-0.5, 1, 1, 0, True)
