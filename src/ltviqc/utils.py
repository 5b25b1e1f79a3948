import numpy as np
import control as ctrl
from scipy import linalg


def timestep_to_dt(timestep):
    """python-control `dt` for a ltviqc timestep (0 continuous, -1 unspecified, > 0 sampled)."""
    if timestep == 0:
        return 0
    if timestep < 0:
        return True
    return timestep


def dt_to_timestep(dt):
    if dt is None or dt is False or dt == 0:
        return 0
    if dt is True:
        return -1
    return float(dt)


def is_discrete(sys):
    return sys.dt is not None and sys.dt is not False and sys.dt != 0


def poles_are_stable(poles, discrete, margin=0.0):
    poles = np.asarray(poles, dtype=complex).reshape(-1)
    if discrete:
        return bool(np.all(np.abs(poles) < 1 - margin))
    return bool(np.all(poles.real < -margin))


def ss_is_stable(sys):
    A = ctrl.ssdata(sys)[0]
    if A.size == 0:
        return True
    return poles_are_stable(np.linalg.eigvals(A), is_discrete(sys))


def lti_stack(sys1, sys2):
    """
    Stacks two Linear Time-Invariant (LTI) systems driven by the same input.

    Returns:
    - A new LTI system whose output is [y1; y2].
    """

    A1, B1, C1, D1 = ctrl.ssdata(sys1)
    A2, B2, C2, D2 = ctrl.ssdata(sys2)

    if B1.shape[1] != B2.shape[1] or D1.shape[1] != D2.shape[1]:
        raise ValueError('Error in system stacking: number of inputs must be the same for both subsystems!')

    A = linalg.block_diag(A1, A2)
    B = np.vstack((B1, B2))
    C = linalg.block_diag(C1, C2)
    D = np.vstack((D1, D2))

    return ctrl.ss(A, B, C, D, dt=sys1.dt)


def tf_column_to_ss(tf):
    """
    State-space realization of a single-input transfer function column.
    Each element is converted on its own (SISO), then stacked.
    """
    sys = None
    for i in range(tf.noutputs):
        num, den = tf.num[i][0], tf.den[i][0]
        element = ctrl.ss(ctrl.tf(num, den, tf.dt))
        sys = element if sys is None else lti_stack(sys, element)
    return sys


def kron_realization(sys, n):
    """Realization of sys (x) I_n, i.e. n copies of sys acting on n channels."""
    A, B, C, D = ctrl.ssdata(sys)
    I = np.eye(n)
    return ctrl.ss(np.kron(A, I), np.kron(B, I), np.kron(C, I), np.kron(D, I), dt=sys.dt)


def static_ss(D, dt):
    D = np.atleast_2d(np.asarray(D, dtype=float))
    return ctrl.ss(np.zeros((0, 0)), np.zeros((0, D.shape[1])), np.zeros((D.shape[0], 0)), D, dt=dt)


def frequency_grid(dt, num=400):
    if dt == 0:
        omega = np.logspace(-3, 3, num)
        return 1j * omega
    return np.exp(1j * np.linspace(0, np.pi, num))


def hinf_norm(sys, num=400):
    """Peak gain of a stable LTI system, evaluated on a frequency grid."""
    A, B, C, D = ctrl.ssdata(sys)
    if A.size == 0:
        return np.linalg.norm(D, 2)
    points = frequency_grid(0 if not is_discrete(sys) else 1, num)
    I = np.eye(A.shape[0])
    peak = 0.0
    for s in points:
        G = C @ np.linalg.solve(s * I - A, B) + D
        peak = max(peak, np.linalg.norm(G, 2))
    return peak


def frequency_response_difference(sys1, sys2, num=400):
    """Peak gain of sys1 - sys2 on a frequency grid (both may be unstable)."""
    A1, B1, C1, D1 = ctrl.ssdata(sys1)
    A2, B2, C2, D2 = ctrl.ssdata(sys2)
    points = frequency_grid(0 if not is_discrete(sys1) else 1, num)
    peak = 0.0
    for s in points:
        G1 = D1 if A1.size == 0 else C1 @ np.linalg.solve(s * np.eye(A1.shape[0]) - A1, B1) + D1
        G2 = D2 if A2.size == 0 else C2 @ np.linalg.solve(s * np.eye(A2.shape[0]) - A2, B2) + D2
        peak = max(peak, np.linalg.norm(G1 - G2, 2))
    return peak
