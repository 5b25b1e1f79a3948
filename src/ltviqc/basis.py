from collections import namedtuple

import numpy as np
import control as ctrl
from scipy import linalg

from .errors import ConstructionError, DimensionError, StabilityError, TimeDomainMismatchError
from .utils import is_discrete, kron_realization, poles_are_stable, ss_is_stable, tf_column_to_ss


DEFAULT_BASIS_LENGTH = 2
DEFAULT_POLE = {True: -0.5, False: -1.0}


class BasisSpec(namedtuple('BasisSpec', ['kind', 'value'])):
    """
    Exactly one way of describing a multiplier basis:

    - ('poles', (basis_length, basis_poles))
    - ('function', TransferFunction column)
    - ('realization', StateSpace column)
    - ('block', block-diagonal StateSpace)
    """

    __slots__ = ()
    KINDS = ('poles', 'function', 'realization', 'block')

    def __new__(cls, kind, value):
        if kind not in cls.KINDS:
            raise ConstructionError(f"Unknown basis specification {kind!r}")
        return super().__new__(cls, kind, value)


def basis_spec(basis_length=None, basis_poles=None, basis_function=None,
               basis_realization=None, block_realization=None):
    """Collapse the mutually-exclusive keyword arguments into a single BasisSpec."""
    explicit = [(kind, value) for kind, value in (('function', basis_function),
                                                  ('realization', basis_realization),
                                                  ('block', block_realization))
                if value is not None]
    if len(explicit) > 1:
        raise ConstructionError(
            "Only one of basis_function, basis_realization and block_realization may be given")
    if explicit:
        if basis_length is not None or basis_poles is not None:
            raise ConstructionError(
                f"basis_length/basis_poles cannot be combined with an explicit basis {explicit[0][0]}")
        return BasisSpec(*explicit[0])
    return BasisSpec('poles', (basis_length, basis_poles))


def group_poles(poles):
    """Split poles into real poles and conjugate pairs (each pair is one group)."""
    poles = list(np.asarray(poles, dtype=complex).reshape(-1))
    groups = []
    while poles:
        p = poles.pop(0)
        if abs(p.imag) < 1e-12:
            groups.append(np.array([p.real]))
            continue
        match = [j for j, q in enumerate(poles) if abs(q - np.conj(p)) < 1e-9]
        if not match:
            raise ConstructionError(f"Complex basis pole {p} is not supplied with its conjugate")
        poles.pop(match[0])
        groups.append(np.array([p, np.conj(p)]))
    return groups


def _section(group):
    """Realization (A, B, C) of 1 / prod(z - p) for one pole group."""
    if group.size == 1:
        return np.array([[group[0].real]]), np.array([[1.0]]), np.array([[1.0]])
    p = group[0]
    A = np.array([[0.0, 1.0], [-abs(p) ** 2, 2 * p.real]])
    return A, np.array([[0.0], [1.0]]), np.array([[1.0, 0.0]])


def _realization_from_groups(groups, length, dt):
    if length == 1:
        return ctrl.ss(np.zeros((0, 0)), np.zeros((0, 1)), np.zeros((1, 0)), np.ones((1, 1)), dt=dt)

    repeated = len(groups) == 1
    sections = [_section(groups[0])] * (length - 1) if repeated else [_section(g) for g in groups]
    sizes = [s[0].shape[0] for s in sections]
    offsets = np.concatenate([[0], np.cumsum(sizes)])
    n = offsets[-1]

    A = linalg.block_diag(*[s[0] for s in sections])
    B = np.zeros((n, 1))
    C = np.zeros((length, n))
    D = np.zeros((length, 1))
    D[0, 0] = 1.0
    for j, (As, Bs, Cs) in enumerate(sections):
        rows = slice(offsets[j], offsets[j + 1])
        if repeated and j > 0:
            # chained sections: input of section j is the output of section j - 1
            A[rows, offsets[j - 1]:offsets[j]] = Bs @ sections[j - 1][2]
        else:
            B[rows] = Bs
        C[j + 1, rows] = Cs
    return ctrl.ss(A, B, C, D, dt=dt)


def _function_from_groups(groups, length, dt):
    dens = [np.array([1.0])]
    for i in range(1, length):
        if len(groups) == 1:
            den = np.real(np.poly(np.tile(groups[0], i)))
        else:
            den = np.real(np.poly(groups[i - 1]))
        dens.append(den)
    return ctrl.tf([[[1.0]] for _ in dens], [[list(den)] for den in dens], dt)


def _check_time_domain(sys, discrete, label):
    if sys.dt is None:
        return
    if discrete and not is_discrete(sys):
        raise TimeDomainMismatchError(f"A continuous-time {label} was given to a discrete-time multiplier")
    if not discrete and is_discrete(sys):
        raise TimeDomainMismatchError(f"A discrete-time {label} was given to a continuous-time multiplier")


class Basis:
    """
    Stable rational basis of a multiplier. Fields not implied by the
    BasisSpec are left as None (basis_length/basis_poles when an explicit
    function or realization was supplied).
    """

    def __init__(self, spec, discrete=True, dim=1):
        self.spec = spec
        self.discrete = discrete
        self.dim = dim
        self.basis_length = None
        self.basis_poles = None
        self.basis_function = None
        self.basis_realization = None
        self.block_realization = None
        dt = True if discrete else 0

        if spec.kind == 'poles':
            self._from_poles(*spec.value, dt=dt)
        elif spec.kind == 'function':
            tf = spec.value
            if not isinstance(tf, ctrl.TransferFunction):
                raise ConstructionError("basis_function must be a control.TransferFunction")
            if tf.ninputs != 1:
                raise DimensionError(f"basis_function must have a single input, got {tf.ninputs}")
            _check_time_domain(tf, discrete, 'basis_function')
            for i in range(tf.noutputs):
                if not poles_are_stable(np.roots(tf.den[i][0]), discrete):
                    raise StabilityError("basis_function must be stable")
            self.basis_function = tf
            self.basis_realization = tf_column_to_ss(tf)
        elif spec.kind == 'realization':
            self.basis_realization = self._checked_ss(spec.value, 1, 'basis_realization')
        else:
            self.block_realization = self._checked_ss(spec.value, dim, 'block_realization')

        if self.block_realization is None:
            self.block_realization = kron_realization(self.basis_realization, dim)

    def _checked_ss(self, sys, width, label):
        if not isinstance(sys, ctrl.StateSpace):
            raise ConstructionError(f"{label} must be a control.StateSpace")
        if sys.ninputs != width:
            raise DimensionError(f"{label} must have {width} input(s), got {sys.ninputs}")
        _check_time_domain(sys, self.discrete, label)
        if not ss_is_stable(sys):
            raise StabilityError(f"{label} must be stable")
        return sys

    def _from_poles(self, length, poles, dt):
        if length is None and poles is None:
            length = DEFAULT_BASIS_LENGTH
        poles = np.array([]) if poles is None else np.asarray(poles).reshape(-1)
        groups = group_poles(poles)
        if length is None:
            length = len(groups) + 1
        length = int(length)
        if length < 1:
            raise ConstructionError(f"basis_length must be positive, got {length}")
        if length > 1 and not groups:
            groups = [np.array([DEFAULT_POLE[self.discrete]])]
        if length == 1 and groups:
            raise ConstructionError("A basis of length 1 takes no poles")
        if length > 1 and len(groups) not in (1, length - 1):
            raise ConstructionError(
                f"{len(groups)} pole group(s) cannot build a basis of length {length}: supply one "
                f"real pole (or conjugate pair) to repeat, or {length - 1} of them")
        for group in groups:
            if not poles_are_stable(group, self.discrete):
                raise StabilityError(f"Basis pole(s) {group} are unstable")

        self.basis_length = length
        self.basis_poles = np.concatenate(groups) if groups else np.array([])
        if np.all(np.isreal(self.basis_poles)):
            self.basis_poles = np.real(self.basis_poles)
        self.basis_function = _function_from_groups(groups, length, dt)
        self.basis_realization = _realization_from_groups(groups, length, dt)

    def block(self, n):
        """Realization applied to an n-channel signal."""
        if self.spec.kind == 'block':
            if n != self.block_realization.ninputs:
                raise DimensionError(
                    f"block_realization acts on {self.block_realization.ninputs} channels, not {n}")
            return self.block_realization
        return kron_realization(self.basis_realization, n)
