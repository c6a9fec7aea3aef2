"""
Model terms for the additive fitter.

A term learns its encoding from the training frame in ``setup`` (factor
levels, knot positions, identifiability constraint) and reproduces exactly
that encoding for any later frame in ``design``. Penalized terms expose one
penalty matrix per smoothing parameter, sized to the term's own columns.

    Fixed('Campaign')                    treatment-coded factor or linear numeric
    Smooth('Hatch_doy', k=10)            cubic P-spline, centred
    TensorSmooth('Longitude', 'Latitude', k=5)
    RandomIntercept('Site')              ridge-penalized level dummies
"""

import copy

import numpy as np
import pandas as pd
from scipy.interpolate import BSpline

from shorebird_cbsm.errors import DataQualityError


class Term:
    """Common interface; see module docstring."""

    kind = 'term'
    penalized = False

    def __init__(self, *variables):
        self.variables = tuple(variables)
        self.is_setup = False

    @property
    def label(self):
        return self.variables[0]

    @property
    def n_coef(self):
        raise NotImplementedError

    @property
    def penalties(self):
        return []

    @property
    def coef_names(self):
        return [f"{self.label}.{i + 1}" for i in range(self.n_coef)]

    def setup(self, data):
        """Return a copy of this term with its encoding learned from data."""
        term = copy.deepcopy(self)
        term._learn(data)
        term.is_setup = True
        return term

    def _learn(self, data):
        raise NotImplementedError

    def design(self, data):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({', '.join(self.variables)})"


# ============================================================================
#  PARAMETRIC
# ============================================================================

def _levels_in_order(series):
    """Observed levels, in category order for categoricals, else sorted."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(series.dropna().unique())
        return [c for c in series.cat.categories if c in present]
    return sorted(series.dropna().unique())


def _level_codes(series, levels, label):
    codes = pd.Categorical(series, categories=levels).codes
    unseen = (codes < 0) & series.notna().to_numpy()
    if unseen.any():
        bad = sorted(series[unseen].astype(str).unique())
        raise DataQualityError(f"{label}: level(s) {bad} were not seen when fitting")
    return codes


class Fixed(Term):
    """
    Unpenalized effect. Factors (object/categorical/bool) are treatment coded
    against their first level; numeric columns enter linearly.
    """

    kind = 'parametric'

    def __init__(self, variable):
        super().__init__(variable)
        self.levels = None

    @property
    def is_factor(self):
        return self.levels is not None

    @property
    def reference(self):
        return self.levels[0] if self.is_factor else None

    @property
    def n_coef(self):
        return len(self.levels) - 1 if self.is_factor else 1

    @property
    def coef_names(self):
        if self.is_factor:
            return [f"{self.label}[T.{lvl}]" for lvl in self.levels[1:]]
        return [self.label]

    def _learn(self, data):
        x = data[self.label]
        if pd.api.types.is_numeric_dtype(x) and not pd.api.types.is_bool_dtype(x):
            self.levels = None
            return
        self.levels = list(_levels_in_order(x))
        if len(self.levels) < 2:
            raise DataQualityError(
                f"{self.label}: factor needs at least 2 observed levels, found {self.levels}"
            )

    def design(self, data):
        x = data[self.label]
        if not self.is_factor:
            return x.to_numpy(dtype=float).reshape(-1, 1)
        codes = _level_codes(x, self.levels, self.label)
        out = np.zeros((len(x), self.n_coef))
        rows = np.where(codes > 0)[0]
        out[rows, codes[rows] - 1] = 1.0
        return out


# ============================================================================
#  SPLINES
# ============================================================================

def _difference_penalty(n_basis, order):
    d = np.diff(np.eye(n_basis), n=order, axis=0)
    return d.T @ d


def _sum_to_zero(basis):
    """
    Null-space basis Z of the centring constraint 1'B Z = 0.

    Returns:
        Z with shape (k, k - 1)
    """
    c = basis.sum(axis=0).reshape(-1, 1)
    q, _ = np.linalg.qr(c, mode='complete')
    return q[:, 1:]


class _Marginal:
    """Equally spaced cubic (or lower) B-spline basis over a fixed range."""

    def __init__(self, x, k, degree=3, penalty_order=2):
        x = np.asarray(x, dtype=float)
        self.lower, self.upper = float(np.min(x)), float(np.max(x))
        self.k = k
        self.degree = min(degree, k - 1)
        self.penalty_order = min(penalty_order, k - 1)

        n_seg = k - self.degree
        dx = (self.upper - self.lower) / n_seg
        self.knots = np.linspace(self.lower - self.degree * dx,
                                 self.upper + self.degree * dx,
                                 n_seg + 2 * self.degree + 1)

    def basis(self, x):
        x = np.clip(np.asarray(x, dtype=float), self.lower, self.upper)
        spline = BSpline(self.knots, np.eye(self.k), self.degree, extrapolate=True)
        return spline(x)

    def penalty(self):
        return _difference_penalty(self.k, self.penalty_order)


def capped_basis_dim(x, k, label):
    """
    Basis dimension actually usable for x: min(k, distinct values - 1).

    Raises:
        DataQualityError: fewer than 3 basis functions would remain
    """
    n_unique = int(pd.Series(np.asarray(x)).nunique())
    k_eff = min(int(k), n_unique - 1)
    if k_eff < 3:
        raise DataQualityError(
            f"{label}: {n_unique} distinct values is too few for a smooth "
            f"(needs at least 4)"
        )
    return k_eff


class Smooth(Term):
    """
    Penalized cubic regression spline s(x).

    Uses a B-spline basis on equally spaced knots with a second-order
    difference penalty, then absorbs a sum-to-zero constraint so the curve is
    identifiable next to the intercept (k - 1 columns remain).
    """

    kind = 'smooth'
    penalized = True

    def __init__(self, variable, k=10):
        super().__init__(variable)
        self.k = k
        self.k_eff = None
        self.marginal = None
        self.Z = None

    @property
    def label(self):
        return f"s({self.variables[0]})"

    @property
    def n_coef(self):
        return self.Z.shape[1]

    @property
    def penalties(self):
        return [self.Z.T @ self.marginal.penalty() @ self.Z]

    def _learn(self, data):
        x = data[self.variables[0]].to_numpy(dtype=float)
        self.k_eff = capped_basis_dim(x, self.k, self.label)
        self.marginal = _Marginal(x, self.k_eff)
        self.Z = _sum_to_zero(self.marginal.basis(x))

    def design(self, data):
        x = data[self.variables[0]].to_numpy(dtype=float)
        return self.marginal.basis(x) @ self.Z


def _row_kron(a, b):
    return (a[:, :, None] * b[:, None, :]).reshape(a.shape[0], -1)


class TensorSmooth(Term):
    """
    Tensor-product smooth te(x, z) of two P-spline margins.

    One penalty per margin, so the surface can be smoother in one direction
    than the other (longitude and latitude need no common scale).
    """

    kind = 'smooth'
    penalized = True

    def __init__(self, x, z, k=5):
        super().__init__(x, z)
        self.k = k
        self.k_eff = None
        self.margins = None
        self.Z = None

    @property
    def label(self):
        return f"te({','.join(self.variables)})"

    @property
    def n_coef(self):
        return self.Z.shape[1]

    @property
    def penalties(self):
        m1, m2 = self.margins
        s1 = np.kron(m1.penalty(), np.eye(m2.k))
        s2 = np.kron(np.eye(m1.k), m2.penalty())
        return [self.Z.T @ s @ self.Z for s in (s1, s2)]

    def _raw_basis(self, data):
        cols = [data[v].to_numpy(dtype=float) for v in self.variables]
        return _row_kron(self.margins[0].basis(cols[0]), self.margins[1].basis(cols[1]))

    def _learn(self, data):
        margins = []
        k_eff = []
        for v in self.variables:
            x = data[v].to_numpy(dtype=float)
            kv = capped_basis_dim(x, self.k, f"{self.label} margin {v}")
            margins.append(_Marginal(x, kv))
            k_eff.append(kv)
        self.margins = margins
        self.k_eff = tuple(k_eff)
        self.Z = _sum_to_zero(self._raw_basis(data))

    def design(self, data):
        return self._raw_basis(data) @ self.Z


# ============================================================================
#  RANDOM EFFECTS
# ============================================================================

class RandomIntercept(Term):
    """
    Random intercept for a grouping factor: one dummy per observed level
    shrunk by an identity penalty, i.e. a Gaussian random effect with
    variance 1 / lambda.
    """

    kind = 'random'
    penalized = True

    def __init__(self, variable):
        super().__init__(variable)
        self.levels = None

    @property
    def label(self):
        return f"s({self.variables[0]})"

    @property
    def n_coef(self):
        return len(self.levels)

    @property
    def coef_names(self):
        return [f"{self.label}[{lvl}]" for lvl in self.levels]

    @property
    def penalties(self):
        return [np.eye(self.n_coef)]

    def _learn(self, data):
        self.levels = list(_levels_in_order(data[self.variables[0]]))
        if not self.levels:
            raise DataQualityError(f"{self.label}: grouping factor has no levels")

    def design(self, data):
        x = data[self.variables[0]]
        codes = _level_codes(x, self.levels, self.label)
        out = np.zeros((len(x), self.n_coef))
        rows = np.where(codes >= 0)[0]
        out[rows, codes[rows]] = 1.0
        return out
