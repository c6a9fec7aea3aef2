"""
Shorebird CBSM - Additive Effect Model
======================================

Penalized-likelihood generalized additive model used by all three analyses.

    y ~ Family(mu, theta),  g(mu) = b0 + fixed effects + sum_j f_j(x_j)

Coefficients are found by penalized iteratively re-weighted least squares
(PIRLS) with step halving. Smoothing parameters (one per penalty) and the
family's nuisance parameter are chosen by minimising a Laplace approximation
to the restricted likelihood (REML):

    V = -l(b) + b'S b / 2 + log|X'WX + S| / 2 - log|S|+ / 2

Standard errors come from the Bayesian posterior covariance
Vp = (X'WX + S)^-1.

Usage:
    model = EffectGAM('Fledge_success_adj',
                      [Fixed('Campaign'), Smooth('Hatch_doy'),
                       RandomIntercept('Site')],
                      family='beta')
    model.fit(df)
    pred = model.predict_intervals(grid, exclude=['Site'])
"""

import json
import logging
from datetime import datetime
from pathlib import Path

import joblib
import numpy as np
import pandas as pd
from scipy.linalg import cho_factor, cho_solve
from scipy.optimize import minimize
from scipy.stats import norm

from shorebird_cbsm.config import CI_MULTIPLIERS, LOG_LAMBDA_BOUNDS
from shorebird_cbsm.errors import DataQualityError, ModelFitError
from shorebird_cbsm.models.families import resolve_family

logger = logging.getLogger(__name__)

INTERCEPT = 'Intercept'


def significance_stars(p):
    if p < 0.001:
        return '***'
    elif p < 0.01:
        return '**'
    elif p < 0.05:
        return '*'
    elif p < 0.10:
        return '+'
    return ''


class EffectGAM:
    """
    Additive model with fixed, smooth and random-intercept terms.

    Attributes:
        response: Response column name
        terms: Term specifications (unfitted)
        family: Family instance
        terms_: Terms with encodings learned at fit time
        coef_: Coefficient vector (intercept first)
        Vp_: Posterior covariance of coef_
        lambdas_: Smoothing parameter per penalty
        theta_: Nuisance parameter (Beta precision / NB size), or None
        data_: Training frame actually used (after dropping incomplete rows)
        metrics: Dictionary of fit statistics
    """

    def __init__(self, response, terms, family='beta', theta=None,
                 max_iter=200, tol=1e-10):
        """
        Args:
            response: Response column
            terms: List of Term objects
            family: Family name ('beta', 'negbin', 'poisson') or instance
            theta: Fix the nuisance parameter instead of estimating it
            max_iter: PIRLS iteration cap
            tol: Relative convergence tolerance on the penalized objective
        """
        self.response = response
        self.terms = list(terms)
        self.family = resolve_family(family)
        self.fixed_theta = theta
        self.max_iter = max_iter
        self.tol = tol

        self.terms_ = None
        self.slices_ = None
        self.coef_ = None
        self.Vp_ = None
        self.edf_ = None
        self.lambdas_ = None
        self.theta_ = None
        self.data_ = None
        self.fitted_values_ = None
        self.metrics = {}

        self._penalties = []
        self._blocks = []
        self._warm = None

    # ------------------------------------------------------------------
    #  Setup
    # ------------------------------------------------------------------

    @property
    def is_fitted(self):
        return self.coef_ is not None

    @property
    def variables(self):
        out = []
        for term in self.terms:
            for v in term.variables:
                if v not in out:
                    out.append(v)
        return out

    @property
    def coef_names(self):
        names = [INTERCEPT]
        for term in self.terms_:
            names.extend(term.coef_names)
        return names

    def _prepare(self, data):
        needed = [self.response] + self.variables
        missing = [c for c in needed if c not in data.columns]
        if missing:
            raise DataQualityError(f"Model columns missing from data: {missing}")

        empty = [c for c in needed if data[c].isna().all()]
        if empty:
            raise DataQualityError(f"Model columns entirely missing: {empty}")

        complete = data[needed].notna().all(axis=1)
        if not complete.all():
            logger.warning(f"Dropping {int((~complete).sum())} rows with missing "
                           f"model variables")
        df = data.loc[complete].copy()
        if df.empty:
            raise DataQualityError("No complete rows to fit")
        return df

    def _assemble(self, data, exclude=()):
        blocks = [np.ones((len(data), 1))]
        for term, sl in zip(self.terms_, self.slices_):
            if term.label in exclude:
                blocks.append(np.zeros((len(data), sl.stop - sl.start)))
            else:
                blocks.append(term.design(data))
        return np.hstack(blocks)

    def _setup_penalties(self, X):
        """Embed and scale each penalty; record per-term blocks for log|S|+."""
        self._penalties = []
        self._blocks = []
        for term, sl in zip(self.terms_, self.slices_):
            if not term.penalized:
                continue
            Xj = X[:, sl]
            norm_x = np.linalg.norm(Xj.T @ Xj)
            idx = []
            for S in term.penalties:
                scale = norm_x / np.linalg.norm(S) if np.linalg.norm(S) > 0 else 1.0
                self._penalties.append({'term': term.label, 'slice': sl,
                                        'S': S * scale, 'scale': scale})
                idx.append(len(self._penalties) - 1)

            total = sum(self._penalties[i]['S'] for i in idx)
            eig = np.linalg.eigvalsh(total)
            rank = int((eig > eig.max() * 1e-9).sum())
            self._blocks.append({'penalties': idx, 'rank': rank})

    def _S_lambda(self, lambdas, p):
        S = np.zeros((p, p))
        for lam, pen in zip(lambdas, self._penalties):
            sl = pen['slice']
            S[sl, sl] += lam * pen['S']
        return S

    def _logdet_S_plus(self, lambdas):
        total = 0.0
        for block in self._blocks:
            M = sum(lambdas[i] * self._penalties[i]['S'] for i in block['penalties'])
            eig = np.sort(np.linalg.eigvalsh(M))[::-1][:block['rank']]
            total += np.sum(np.log(np.maximum(eig, 1e-300)))
        return total

    # ------------------------------------------------------------------
    #  Inner fit: PIRLS
    # ------------------------------------------------------------------

    def _objective(self, X, y, beta, S, theta):
        eta = X @ beta
        ll = self.family.loglik(y, self.family.linkinv(eta), theta)
        pen = float(beta @ S @ beta)
        return -ll + 0.5 * pen, ll, pen

    def _working(self, eta, y, theta):
        fam = self.family
        mu = fam.clip_mu(fam.linkinv(eta))
        dmu = fam.mu_eta(eta)
        w = fam.weights(mu, dmu, theta)
        u = fam.score_eta(y, mu, dmu, theta)
        return w, u

    def _factor(self, H):
        try:
            return cho_factor(H)
        except np.linalg.LinAlgError as e:
            raise ModelFitError(
                "Penalized Hessian is not positive definite; the fixed-effect "
                "design is probably rank deficient"
            ) from e

    def _pirls(self, X, y, S, theta, beta_start=None):
        """
        Penalized IRLS for fixed smoothing and nuisance parameters.

        Returns:
            dict with beta, loglik, penalty, weights, Cholesky factor of
            X'WX + S, iterations and a convergence flag
        """
        p = X.shape[1]
        if beta_start is None:
            eta0 = self.family.linkfun(self.family.init_mu(y))
            cf = self._factor(X.T @ X + S + 1e-8 * np.eye(p))
            beta = cho_solve(cf, X.T @ eta0)
        else:
            beta = beta_start.copy()

        obj, ll, pen = self._objective(X, y, beta, S, theta)
        if not np.isfinite(obj):
            raise ModelFitError("Penalized log likelihood is not finite at the start values")

        converged = False
        for it in range(1, self.max_iter + 1):
            eta = X @ beta
            w, u = self._working(eta, y, theta)
            z = eta + u / w
            cf = self._factor(X.T @ (w[:, None] * X) + S)
            beta_new = cho_solve(cf, X.T @ (w * z))

            delta = beta_new - beta
            step = 1.0
            improved = False
            for _ in range(40):
                cand = beta + step * delta
                obj_c, ll_c, pen_c = self._objective(X, y, cand, S, theta)
                if np.isfinite(obj_c) and obj_c <= obj + 1e-12 * abs(obj):
                    improved = True
                    break
                step *= 0.5

            if not improved:
                # Newton direction cannot lower the objective any further
                converged = True
                break

            change = abs(obj - obj_c)
            beta, obj, ll, pen = cand, obj_c, ll_c, pen_c
            if change < self.tol * (abs(obj) + 0.1):
                converged = True
                break

        eta = X @ beta
        w, _ = self._working(eta, y, theta)
        XtWX = X.T @ (w[:, None] * X)
        cf = self._factor(XtWX + S)

        return {
            'beta': beta, 'loglik': ll, 'penalty': pen, 'weights': w,
            'XtWX': XtWX, 'chol': cf, 'n_iter': it, 'converged': converged,
        }

    # ------------------------------------------------------------------
    #  Outer fit: REML
    # ------------------------------------------------------------------

    def _unpack(self, params):
        m = len(self._penalties)
        lambdas = np.exp(params[:m])
        if self.family.has_theta and self.fixed_theta is None:
            theta = float(np.exp(params[m]))
        else:
            theta = self.fixed_theta
        return lambdas, theta

    def _reml(self, params, X, y):
        lambdas, theta = self._unpack(params)
        S = self._S_lambda(lambdas, X.shape[1])
        fit = self._pirls(X, y, S, theta, beta_start=self._warm)
        self._warm = fit['beta']

        c = fit['chol'][0]
        logdet_H = 2.0 * np.sum(np.log(np.abs(np.diag(c))))
        score = (-fit['loglik'] + 0.5 * fit['penalty'] + 0.5 * logdet_H
                 - 0.5 * self._logdet_S_plus(lambdas))
        return score

    def fit(self, data):
        """
        Fit the model. A fitted model is immutable; build a new EffectGAM
        to refit.

        Args:
            data: Training frame holding the response and all term variables

        Returns:
            self
        """
        if self.is_fitted:
            raise ValueError("Model already fitted; create a new EffectGAM to refit")

        df = self._prepare(data)
        y = self.family.validate(df[self.response].to_numpy(dtype=float))

        logger.info(f"Fitting {self.family.name} GAM for {self.response}: "
                    f"{len(df):,} rows, terms={[t.label for t in self.terms]}")

        self.terms_ = [t.setup(df) for t in self.terms]
        self.slices_ = []
        start = 1
        for term in self.terms_:
            self.slices_.append(slice(start, start + term.n_coef))
            start += term.n_coef

        X = self._assemble(df)
        self._setup_penalties(X)
        n_pen = len(self._penalties)
        estimate_theta = self.family.has_theta and self.fixed_theta is None

        x0 = [0.0] * n_pen
        bounds = [LOG_LAMBDA_BOUNDS] * n_pen
        if estimate_theta:
            x0.append(np.log(self.family.init_theta(y)))
            bounds.append(self.family.log_theta_bounds)
        x0 = np.array(x0, dtype=float)

        logger.info(f"  {X.shape[1]} coefficients, {n_pen} smoothing parameters"
                    f"{', estimating ' + self.family.theta_name if estimate_theta else ''}")

        self._warm = None
        outer = None
        if len(x0) > 0:
            outer = minimize(self._reml, x0, args=(X, y), method='L-BFGS-B',
                             bounds=bounds, options={'maxiter': 200, 'eps': 1e-4})
            if not outer.success:
                logger.warning(f"  REML search stopped early: {outer.message}")
            params = outer.x
        else:
            params = x0

        lambdas, theta = self._unpack(params)
        S = self._S_lambda(lambdas, X.shape[1])
        fit = self._pirls(X, y, S, theta, beta_start=self._warm)
        if not fit['converged']:
            raise ModelFitError(
                f"PIRLS did not converge in {self.max_iter} iterations"
            )

        Vp = cho_solve(fit['chol'], np.eye(X.shape[1]))
        edf = np.diag(Vp @ fit['XtWX'])

        self.coef_ = fit['beta']
        self.Vp_ = Vp
        self.edf_ = edf
        self.lambdas_ = lambdas
        self.theta_ = theta
        self.data_ = df
        self.fitted_values_ = pd.Series(self.family.linkinv(X @ self.coef_),
                                        index=df.index, name='fitted')

        reml = self._reml(params, X, y) if len(params) else float('nan')
        n_extra = 1 if estimate_theta else 0
        self.metrics = {
            'n': len(df),
            'family': self.family.name,
            'loglik': fit['loglik'],
            'reml': reml,
            'edf': float(edf.sum()),
            'aic': -2 * fit['loglik'] + 2 * (edf.sum() + n_extra),
            'theta': theta,
            'pirls_iterations': fit['n_iter'],
            'outer_iterations': int(outer.nit) if outer is not None else 0,
            'fitted_at': datetime.now().isoformat(timespec='seconds'),
        }

        logger.info(f"  Fit complete: logLik={fit['loglik']:.2f}, "
                    f"edf={edf.sum():.2f}, AIC={self.metrics['aic']:.1f}")
        return self

    # ------------------------------------------------------------------
    #  Prediction
    # ------------------------------------------------------------------

    def _check_fitted(self):
        if not self.is_fitted:
            raise ValueError("Model not fitted")

    def _resolve_terms(self, names):
        """Map term labels or variable names to term labels."""
        out = set()
        for name in names or ():
            matches = [t.label for t in self.terms_
                       if name == t.label or name in t.variables]
            if not matches:
                raise ValueError(f"No model term matches {name!r}")
            out.update(matches)
        return out

    def find_term(self, name):
        self._check_fitted()
        label = self._resolve_terms([name])
        for term, sl in zip(self.terms_, self.slices_):
            if term.label in label:
                return term, sl

    def design_matrix(self, data, exclude=()):
        """
        Model matrix for new data using the fit-time encodings.

        Columns of excluded terms are zero (population-average effect) and
        their variables need not be present in ``data``.
        """
        self._check_fitted()
        excluded = self._resolve_terms(exclude)

        needed = []
        for term in self.terms_:
            if term.label not in excluded:
                needed.extend(v for v in term.variables if v not in needed)
        missing = [c for c in needed if c not in data.columns]
        if missing:
            raise DataQualityError(f"Prediction data missing columns: {missing}")
        incomplete = data[needed].isna().any(axis=1)
        if incomplete.any():
            raise DataQualityError(
                f"Prediction data has {int(incomplete.sum())} rows with missing covariates"
            )
        return self._assemble(data, exclude=excluded)

    def predict(self, data=None, exclude=(), type='response'):
        """
        Point predictions with standard errors.

        Args:
            data: Frame to predict for (defaults to the training data)
            exclude: Term labels or variable names held at zero effect
            type: 'response' (delta-method SE) or 'link'

        Returns:
            DataFrame with fit and se_fit, indexed like data
        """
        self._check_fitted()
        if type not in ('response', 'link'):
            raise ValueError(f"type must be 'response' or 'link', got {type!r}")
        data = self.data_ if data is None else data

        X = self.design_matrix(data, exclude=exclude)
        eta = X @ self.coef_
        se_eta = np.sqrt(np.maximum(np.sum((X @ self.Vp_) * X, axis=1), 0.0))

        if type == 'link':
            fit, se = eta, se_eta
        else:
            fit = self.family.linkinv(eta)
            se = np.abs(self.family.mu_eta(eta)) * se_eta

        return pd.DataFrame({'fit': fit, 'se_fit': se}, index=data.index)

    def predict_intervals(self, data=None, exclude=(), multipliers=None):
        """
        Response-scale predictions with nested confidence intervals.

        Intervals are formed on the link scale (fit +/- m * se) and
        back-transformed, so Beta predictions stay inside (0, 1).

        Returns:
            DataFrame with fit, se_fit, and lower_<p>/upper_<p> for each
            interval width in ``multipliers`` (default 80 and 95)
        """
        multipliers = multipliers or CI_MULTIPLIERS
        data = self.data_ if data is None else data

        link = self.predict(data, exclude=exclude, type='link')
        resp = self.predict(data, exclude=exclude, type='response')

        out = resp.copy()
        for width, m in sorted(multipliers.items()):
            out[f'lower_{width}'] = self.family.linkinv(link['fit'] - m * link['se_fit'])
            out[f'upper_{width}'] = self.family.linkinv(link['fit'] + m * link['se_fit'])
        return out

    def newdata_grid(self, sweep=None, by=None, n=100):
        """
        Synthetic covariate grid built from the training data.

        Numeric variables are held at their median and factors at their
        first level, except ``sweep`` (n evenly spaced values over its
        observed range) and ``by`` (every fitted level).

        Returns:
            DataFrame with one column per model variable
        """
        self._check_fitted()
        df = self.data_
        for v in (sweep, by):
            if v is not None and v not in self.variables:
                raise ValueError(f"{v!r} is not a model variable")

        base = {}
        for v in self.variables:
            col = df[v]
            if pd.api.types.is_numeric_dtype(col) and not pd.api.types.is_bool_dtype(col):
                base[v] = float(col.median())
            else:
                base[v] = self._levels_for(v)[0]

        grid = pd.DataFrame([base])
        if sweep is not None:
            xs = np.linspace(df[sweep].min(), df[sweep].max(), n)
            grid = pd.DataFrame({sweep: xs}).merge(grid.drop(columns=[sweep]),
                                                    how='cross')
        if by is not None:
            levels = pd.DataFrame({by: self._levels_for(by)})
            grid = levels.merge(grid.drop(columns=[by]), how='cross')

        for v in self.variables:
            if isinstance(df[v].dtype, pd.CategoricalDtype):
                grid[v] = pd.Categorical(grid[v], categories=df[v].cat.categories)
        return grid[self.variables]

    def _levels_for(self, variable):
        for term in self.terms_:
            levels = getattr(term, 'levels', None)
            if levels and variable in term.variables:
                return list(levels)
        col = self.data_[variable]
        if isinstance(col.dtype, pd.CategoricalDtype):
            return [c for c in col.cat.categories if c in set(col.dropna())]
        return sorted(col.dropna().unique())

    def random_effects(self, name):
        """
        Per-level random-intercept estimates on the link scale.

        Returns:
            DataFrame with level, estimate, se, lower_95, upper_95 sorted by
            estimate
        """
        term, sl = self.find_term(name)
        if term.kind != 'random':
            raise ValueError(f"{term.label} is not a random-intercept term")

        est = self.coef_[sl]
        se = np.sqrt(np.diag(self.Vp_)[sl])
        m = CI_MULTIPLIERS[95]
        out = pd.DataFrame({
            'level': term.levels,
            'estimate': est,
            'se': se,
            'lower_95': est - m * se,
            'upper_95': est + m * se,
        })
        return out.sort_values('estimate').reset_index(drop=True)

    # ------------------------------------------------------------------
    #  Reporting
    # ------------------------------------------------------------------

    def summary(self):
        """
        Coefficient and smooth-term tables.

        Returns:
            dict with 'parametric' and 'smooth' DataFrames and 'fit' metrics
        """
        self._check_fitted()
        se = np.sqrt(np.diag(self.Vp_))

        par_idx = [0]
        for term, sl in zip(self.terms_, self.slices_):
            if term.kind == 'parametric':
                par_idx.extend(range(sl.start, sl.stop))
        names = self.coef_names
        est = self.coef_[par_idx]
        z = est / se[par_idx]
        parametric = pd.DataFrame({
            'term': [names[i] for i in par_idx],
            'estimate': est,
            'se': se[par_idx],
            'z': z,
            'p_value': 2 * norm.sf(np.abs(z)),
        })

        rows = []
        for term, sl in zip(self.terms_, self.slices_):
            if not term.penalized:
                continue
            pens = [(i, p) for i, p in enumerate(self._penalties) if p['term'] == term.label]
            lams = [self.lambdas_[i] for i, _ in pens]
            row = {
                'term': term.label,
                'kind': term.kind,
                'n_coef': term.n_coef,
                'edf': float(self.edf_[sl].sum()),
                'lambda': ', '.join(f"{lam:.4g}" for lam in lams),
                'sd': np.nan,
            }
            if term.kind == 'random':
                i, pen = pens[0]
                row['sd'] = float(1.0 / np.sqrt(self.lambdas_[i] * pen['scale']))
            rows.append(row)
        smooth = pd.DataFrame(rows, columns=['term', 'kind', 'n_coef', 'edf', 'lambda', 'sd'])

        return {'parametric': parametric, 'smooth': smooth, 'fit': dict(self.metrics)}

    def format_summary(self):
        """Printable summary in the style of a regression report."""
        s = self.summary()
        fit = s['fit']
        lines = [
            f"Family: {self.family.name} (link={type(self.family.link).__name__})",
            f"Response: {self.response}",
            f"n={fit['n']:,}  logLik={fit['loglik']:.2f}  REML={fit['reml']:.2f}  "
            f"AIC={fit['aic']:.1f}  edf={fit['edf']:.2f}",
        ]
        if fit['theta'] is not None:
            lines.append(f"{self.family.theta_name}={fit['theta']:.4g}")

        lines.append("")
        lines.append(f"{'Parametric term':<30} {'Estimate':>9} {'SE':>8} {'z':>7} {'p-val':>8}")
        lines.append("-" * 68)
        for _, row in s['parametric'].iterrows():
            lines.append(f"{row['term']:<30} {row['estimate']:>9.4f} {row['se']:>8.4f} "
                         f"{row['z']:>7.2f} {row['p_value']:>8.4f} "
                         f"{significance_stars(row['p_value'])}")

        if len(s['smooth']):
            lines.append("")
            lines.append(f"{'Smooth / random term':<30} {'edf':>7} {'coef':>5} {'sd':>8}  lambda")
            lines.append("-" * 68)
            for _, row in s['smooth'].iterrows():
                sd = f"{row['sd']:>8.4f}" if np.isfinite(row['sd']) else f"{'':>8}"
                lines.append(f"{row['term']:<30} {row['edf']:>7.2f} {row['n_coef']:>5d} "
                             f"{sd}  {row['lambda']}")
        lines.append("---")
        lines.append("Signif. codes: *** 0.001  ** 0.01  * 0.05  + 0.1")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    #  Persistence
    # ------------------------------------------------------------------

    def save(self, path):
        """
        Save model artifacts.

        Args:
            path: Directory path for saving
        """
        self._check_fitted()
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)

        joblib.dump(self, path / 'effect_gam.pkl')

        metadata = {
            'response': self.response,
            'terms': [t.label for t in self.terms_],
            'coef_names': self.coef_names,
            'metrics': self.metrics,
            'saved_at': datetime.now().isoformat(),
        }
        with open(path / 'metadata.json', 'w', encoding='utf-8') as f:
            json.dump(metadata, f, indent=2, default=float)

        logger.info(f"Model saved to {path}")

    @classmethod
    def load(cls, path):
        """
        Load a model written by ``save``.

        Args:
            path: Directory path containing saved model
        """
        model = joblib.load(Path(path) / 'effect_gam.pkl')
        if not isinstance(model, cls):
            raise TypeError(f"{path} does not hold an {cls.__name__}")
        return model
