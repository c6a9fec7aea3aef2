"""
Response families supported by the additive-model fitter.

The set is closed: ``beta`` (logit link) for proportions, ``negbin`` (log
link, NB2 variance mu + mu^2/theta) for overdispersed counts and ``poisson``
(log link) for plain counts. Each family carries its link from statsmodels,
a full log likelihood (all normalising constants, so the nuisance parameter
can be estimated), the score and Fisher weight on the linear-predictor scale
used by PIRLS, and the check that the response lies in its domain.

``resolve_family`` maps the name used in analysis modules to an instance.
"""

from dataclasses import dataclass

import numpy as np
from scipy.special import digamma, gammaln, polygamma
from statsmodels.genmod.families import links

from shorebird_cbsm.errors import DataQualityError

MU_EPS = 1e-10


@dataclass(frozen=True)
class Family:
    """
    Base class; subclasses fill in the likelihood pieces.

    Attributes:
        name: Registry key
        has_theta: Whether a nuisance parameter is estimated alongside beta
        theta_name: Display name of the nuisance parameter
        log_theta_bounds: Search box for log(theta) in the outer optimisation
    """
    name = 'base'
    has_theta = False
    theta_name = ''
    log_theta_bounds = (None, None)

    @property
    def link(self):
        raise NotImplementedError

    def linkfun(self, mu):
        return self.link(mu)

    def linkinv(self, eta):
        return self.link.inverse(eta)

    def mu_eta(self, eta):
        """d mu / d eta."""
        return self.link.inverse_deriv(eta)

    def clip_mu(self, mu):
        return mu

    def validate(self, y):
        raise NotImplementedError

    def init_mu(self, y):
        raise NotImplementedError

    def init_theta(self, y):
        return None

    def loglik(self, y, mu, theta=None):
        raise NotImplementedError

    def score_eta(self, y, mu, dmu, theta=None):
        """d loglik / d eta per observation."""
        raise NotImplementedError

    def weights(self, mu, dmu, theta=None):
        """Expected information on the eta scale per observation."""
        raise NotImplementedError

    def _check_finite(self, y):
        y = np.asarray(y, dtype=float)
        n_bad = int((~np.isfinite(y)).sum())
        if n_bad:
            raise DataQualityError(f"{self.name}: response has {n_bad} non-finite values")
        return y


@dataclass(frozen=True)
class BetaFamily(Family):
    """Beta regression with mean mu and precision phi (theta)."""
    name = 'beta'
    has_theta = True
    theta_name = 'phi'
    log_theta_bounds = (np.log(1e-2), np.log(1e6))

    @property
    def link(self):
        return links.Logit()

    def clip_mu(self, mu):
        return np.clip(mu, MU_EPS, 1 - MU_EPS)

    def validate(self, y):
        y = self._check_finite(y)
        outside = (y <= 0) | (y >= 1)
        if outside.any():
            raise DataQualityError(
                f"beta: {int(outside.sum())} response values outside the open "
                f"interval (0, 1) (min={y.min():.4g}, max={y.max():.4g}); "
                f"apply the boundary correction first"
            )
        return y

    def init_mu(self, y):
        return (y + y.mean()) / 2

    def init_theta(self, y):
        m, v = y.mean(), y.var()
        if v <= 0:
            return 10.0
        return float(np.clip(m * (1 - m) / v - 1, 1.0, 1e4))

    def loglik(self, y, mu, theta=None):
        mu = self.clip_mu(mu)
        a, b = mu * theta, (1 - mu) * theta
        return float(np.sum(gammaln(theta) - gammaln(a) - gammaln(b)
                            + (a - 1) * np.log(y) + (b - 1) * np.log1p(-y)))

    def score_eta(self, y, mu, dmu, theta=None):
        mu = self.clip_mu(mu)
        ystar = np.log(y) - np.log1p(-y)
        mustar = digamma(mu * theta) - digamma((1 - mu) * theta)
        return theta * (ystar - mustar) * dmu

    def weights(self, mu, dmu, theta=None):
        mu = self.clip_mu(mu)
        info_mu = theta ** 2 * (polygamma(1, mu * theta) + polygamma(1, (1 - mu) * theta))
        return info_mu * dmu ** 2


def _validate_counts(name, y):
    negative = y < 0
    if negative.any():
        raise DataQualityError(f"{name}: {int(negative.sum())} negative counts")
    fractional = np.abs(y - np.round(y)) > 1e-8
    if fractional.any():
        raise DataQualityError(f"{name}: {int(fractional.sum())} non-integer counts")
    return y


@dataclass(frozen=True)
class NegativeBinomialFamily(Family):
    """NB2 counts: Var(y) = mu + mu^2 / theta."""
    name = 'negbin'
    has_theta = True
    theta_name = 'theta'
    log_theta_bounds = (np.log(1e-3), np.log(1e5))

    @property
    def link(self):
        return links.Log()

    def clip_mu(self, mu):
        return np.maximum(mu, MU_EPS)

    def validate(self, y):
        return _validate_counts(self.name, self._check_finite(y))

    def init_mu(self, y):
        return y + 0.1

    def init_theta(self, y):
        m, v = y.mean(), y.var()
        if v <= m or m <= 0:
            return 10.0
        return float(np.clip(m ** 2 / (v - m), 1e-2, 1e4))

    def loglik(self, y, mu, theta=None):
        mu = self.clip_mu(mu)
        return float(np.sum(gammaln(y + theta) - gammaln(theta) - gammaln(y + 1)
                            + theta * np.log(theta / (theta + mu))
                            + y * np.log(mu / (theta + mu))))

    def score_eta(self, y, mu, dmu, theta=None):
        mu = self.clip_mu(mu)
        return (y - mu) * theta / (mu * (theta + mu)) * dmu

    def weights(self, mu, dmu, theta=None):
        mu = self.clip_mu(mu)
        return theta / (mu * (theta + mu)) * dmu ** 2


@dataclass(frozen=True)
class PoissonFamily(Family):
    name = 'poisson'

    @property
    def link(self):
        return links.Log()

    def clip_mu(self, mu):
        return np.maximum(mu, MU_EPS)

    def validate(self, y):
        return _validate_counts(self.name, self._check_finite(y))

    def init_mu(self, y):
        return y + 0.1

    def loglik(self, y, mu, theta=None):
        mu = self.clip_mu(mu)
        return float(np.sum(y * np.log(mu) - mu - gammaln(y + 1)))

    def score_eta(self, y, mu, dmu, theta=None):
        mu = self.clip_mu(mu)
        return (y - mu) / mu * dmu

    def weights(self, mu, dmu, theta=None):
        mu = self.clip_mu(mu)
        return dmu ** 2 / mu


_FAMILIES = {
    'beta': BetaFamily,
    'negbin': NegativeBinomialFamily,
    'poisson': PoissonFamily,
}


def resolve_family(family):
    """
    Family instance for a registry name (or pass an instance through).

    Raises:
        ValueError: Unknown family name
    """
    if isinstance(family, Family):
        return family
    key = str(family).strip().lower()
    if key not in _FAMILIES:
        raise ValueError(f"Unknown family {family!r}; choose from {sorted(_FAMILIES)}")
    return _FAMILIES[key]()
