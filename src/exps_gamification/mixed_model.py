from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy.special import expit
from scipy.stats import norm
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .design import BETWEEN_FACTORS, WITHIN_FACTOR, DesignEncoding, encode_design
from .errors import DesignEncodingError, InsufficientDataError, NonConvergenceWarning, SingularFitWarning

logger = logging.getLogger(__name__)

GAMIFIED = WITHIN_FACTOR
GROUP = "exp_group_c"
ORDER = "exp_order_c"

Term = Tuple[str, ...]

# Group and order only enter as modifiers of the gamified effect: they are between-subject and
# only partially crossed with gamified, so their main effects are not separately estimable.
FULL_TERMS: Tuple[Term, ...] = ((GAMIFIED,), (GAMIFIED, GROUP), (GAMIFIED, ORDER), (GAMIFIED, GROUP, ORDER))
# Questions asked under a single gamified level.
REDUCED_TERMS: Tuple[Term, ...] = ((GROUP,), (ORDER,), (GROUP, ORDER))

INTERCEPT = "Intercept"
_RESPONSE = "response"
_SUBJECT = "subject"
_ITEM = "item"
_LOGISTIC_SD = math.pi / math.sqrt(3)
# Derivative-free; used once when the gradient optimiser hits a singular Hessian at the boundary.
_FALLBACK_METHOD = "powell"


def term_name(term: Term) -> str:
    return ":".join(term)


def full_terms() -> Tuple[Term, ...]:
    return FULL_TERMS


def reduced_terms() -> Tuple[Term, ...]:
    return REDUCED_TERMS


class ResponseFamily(str, Enum):
    """Error distribution / link of an outcome."""

    IDENTITY = "identity"  # continuous, symmetric
    LOG = "log"  # strictly positive, right-skewed; fit on ln(y)
    LOGIT = "logit"  # binary correctness, binomial GLMM

    def transform(self, values: pd.Series) -> pd.Series:
        values = pd.to_numeric(values.astype("float64") if str(values.dtype) == "boolean" else values, errors="raise").astype(float)
        if self is ResponseFamily.LOG:
            if (values <= 0).any():
                raise ValueError("Log-linear outcomes must be strictly positive")
            return np.log(values)
        if self is ResponseFamily.LOGIT:
            if not values.isin([0.0, 1.0]).all():
                raise ValueError("Binomial-logit outcomes must be binary (0/1)")
        return values

    def inverse(self, eta: Any) -> np.ndarray:
        eta = np.asarray(eta, dtype=float)
        if self is ResponseFamily.LOG:
            return np.exp(eta)
        if self is ResponseFamily.LOGIT:
            return expit(eta)
        return eta


class RandomEffects(str, Enum):
    SUBJECT = "subject"  # subject-level outcomes (ratings, scores)
    SUBJECT_ITEM = "subject+item"  # trial-level outcomes (accuracy, RT)


@dataclass(frozen=True)
class ModelSpec:
    """Closed description of one outcome model."""

    outcome: str
    response: str
    family: ResponseFamily = ResponseFamily.IDENTITY
    random_effects: RandomEffects = RandomEffects.SUBJECT
    subject_col: str = "subject"
    item_col: Optional[str] = "fact_id"

    def __post_init__(self) -> None:
        object.__setattr__(self, "family", ResponseFamily(self.family))
        object.__setattr__(self, "random_effects", RandomEffects(self.random_effects))
        if self.random_effects is RandomEffects.SUBJECT_ITEM and not self.item_col:
            raise ValueError(f"{self.outcome}: an item column is required for crossed subject/item intercepts")

    @property
    def grouping_columns(self) -> List[str]:
        if self.random_effects is RandomEffects.SUBJECT_ITEM:
            return [self.subject_col, str(self.item_col)]
        return [self.subject_col]


@dataclass(frozen=True)
class FitOptions:
    """Optimiser settings shared by every outcome fit.

    ``singular_tol`` applies to the likelihood fits: a random-effect SD below this fraction of
    the residual SD is a boundary estimate. The variational-Bayes posterior of the binomial
    model never reaches zero under its log-SD prior, so logit fits use the looser
    ``vb_singular_tol`` on the posterior-mean SD relative to the logistic SD instead.
    ``vb_gtol`` is the largest ELBO gradient accepted when the VB optimiser stops on
    precision loss.
    """

    method: str = "bfgs"
    maxiter: int = 300
    reml: bool = True
    singular_tol: float = 1e-4
    vb_singular_tol: float = 0.05
    vb_gtol: float = 1e-2


@dataclass(frozen=True, eq=False)
class FittedModel:
    spec: ModelSpec
    terms: Tuple[Term, ...]
    encoding: DesignEncoding
    coefficients: pd.DataFrame  # index: term names; estimate, std_error, statistic, pvalue
    variance_components: Dict[str, float]
    converged: bool
    n_obs: int
    n_subjects: int
    n_items: int = 0
    aic: float = float("nan")
    bic: float = float("nan")
    llf: float = float("nan")
    caveats: Tuple[Warning, ...] = field(default_factory=tuple)
    result: Any = None  # statsmodels results object; dropped when shipped across processes

    @property
    def outcome(self) -> str:
        return self.spec.outcome

    @property
    def family(self) -> ResponseFamily:
        return self.spec.family

    @property
    def reduced(self) -> bool:
        return GAMIFIED not in self.covariates

    @property
    def covariates(self) -> Tuple[str, ...]:
        seen: List[str] = []
        for term in self.terms:
            for name in term:
                if name not in seen:
                    seen.append(name)
        return tuple(seen)

    @property
    def params(self) -> pd.Series:
        return self.coefficients["estimate"]

    @property
    def singular(self) -> bool:
        return any(isinstance(c, SingularFitWarning) for c in self.caveats)

    def formula(self) -> str:
        return _formula(self.terms)


def _formula(terms: Sequence[Term]) -> str:
    return f"{_RESPONSE} ~ " + " + ".join(term_name(t) for t in terms)


def _coefficient_table(names: Sequence[str], estimates: Any, std_errors: Any, statistics: Any = None, pvalues: Any = None) -> pd.DataFrame:
    est = np.asarray(estimates, dtype=float)
    se = np.asarray(std_errors, dtype=float)
    if statistics is None:
        with np.errstate(divide="ignore", invalid="ignore"):
            stat = np.where(se > 0, est / se, np.nan)
        pvalue = 2 * norm.sf(np.abs(stat))
    else:
        stat = np.asarray(statistics, dtype=float)
        pvalue = np.asarray(pvalues, dtype=float)
    table = pd.DataFrame({"estimate": est, "std_error": se, "statistic": stat, "pvalue": pvalue}, index=list(names))
    table.index.name = "term"
    return table


def _check_sample(data: pd.DataFrame, spec: ModelSpec) -> None:
    if data.empty:
        raise InsufficientDataError(f"{spec.outcome}: no rows with a non-missing '{spec.response}'")
    n_subjects = data[spec.subject_col].nunique()
    if n_subjects < 2:
        raise InsufficientDataError(f"{spec.outcome}: at least two subjects are required, found {n_subjects}")
    for col in spec.grouping_columns:
        if data[col].isna().any():
            raise InsufficientDataError(f"{spec.outcome}: grouping column '{col}' has missing values")


def _has_random_intercepts(data: pd.DataFrame, spec: ModelSpec, terms: Sequence[Term]) -> bool:
    """Whether the random intercepts are estimable; raise when a trial-level model cannot be fit."""
    unreplicated = [col for col in spec.grouping_columns if data[col].nunique() >= len(data)]
    if not unreplicated:
        return True
    # A question asked once per subject under a single gamified level leaves only between-subject terms.
    if tuple(terms) == REDUCED_TERMS and unreplicated == [spec.subject_col] and spec.random_effects is RandomEffects.SUBJECT:
        logger.info(f"{spec.outcome}: one observation per subject; fitting fixed effects only")
        return False
    raise InsufficientDataError(f"{spec.outcome}: random-effect grouping {unreplicated} has no replication")


def select_terms(data: pd.DataFrame, outcome: str, gamified_only: Optional[bool] = None) -> Tuple[Term, ...]:
    """Full structure when gamified varies in the sample, reduced when it is constant."""
    levels = sorted(data[GAMIFIED].dropna().unique().tolist())
    if gamified_only is not None and levels != [gamified_only]:
        raise DesignEncodingError(f"{outcome}: declared as asked only when gamified={gamified_only}, but the sample has gamified levels {levels}")
    if len(levels) == 2:
        return FULL_TERMS
    if len(levels) == 1:
        logger.info(f"{outcome}: gamified is constant ({levels[0]}); fitting group/order terms without gamified")
        return REDUCED_TERMS
    raise DesignEncodingError(f"{outcome}: factor '{GAMIFIED}' must take one or two levels, found {levels}")


def _model_frame(data: pd.DataFrame, covariates: pd.DataFrame, response: pd.Series, spec: ModelSpec) -> pd.DataFrame:
    frame = covariates.copy()
    frame[_RESPONSE] = response.to_numpy()
    frame[_SUBJECT] = data[spec.subject_col].astype(str).to_numpy()
    if spec.random_effects is RandomEffects.SUBJECT_ITEM:
        frame[_ITEM] = data[str(spec.item_col)].astype(str).to_numpy()
    return frame.reset_index(drop=True)


def _vc_formulas(spec: ModelSpec) -> Dict[str, str]:
    vc = {_SUBJECT: f"0 + C({_SUBJECT})"}
    if spec.random_effects is RandomEffects.SUBJECT_ITEM:
        vc[_ITEM] = f"0 + C({_ITEM})"
    return vc


def _fit_linear(frame: pd.DataFrame, formula: str, spec: ModelSpec, options: FitOptions) -> Tuple[Any, pd.DataFrame, Dict[str, float], float, bool]:
    if spec.random_effects is RandomEffects.SUBJECT:
        model = smf.mixedlm(formula=formula, data=frame, groups=frame[_SUBJECT])
    else:
        # Crossed intercepts: one all-encompassing group carrying subject and item variance components.
        frame = frame.assign(_all=1)
        model = smf.mixedlm(formula=formula, data=frame, groups=frame["_all"], re_formula="0", vc_formula=_vc_formulas(spec))
    try:
        result = model.fit(reml=options.reml, method=options.method, maxiter=options.maxiter)
    except np.linalg.LinAlgError:
        if options.method == _FALLBACK_METHOD:
            raise
        warnings.warn(f"{spec.outcome}: {options.method} optimizer stopped on a non-invertible Hessian; refit with {_FALLBACK_METHOD}", ConvergenceWarning)
        result = model.fit(reml=options.reml, method=_FALLBACK_METHOD, maxiter=options.maxiter)

    fe = result.fe_params
    table = _coefficient_table(list(fe.index), fe.to_numpy(), np.asarray(result.bse_fe)[: len(fe)])
    if spec.random_effects is RandomEffects.SUBJECT:
        variances = {_SUBJECT: float(np.asarray(result.cov_re)[0, 0])}
    else:
        names = list(getattr(model.exog_vc, "names", _vc_formulas(spec).keys()))
        variances = {name: float(v) for name, v in zip(names, np.asarray(result.vcomp))}
    scale = float(result.scale)
    return result, table, variances, scale, bool(getattr(result, "converged", True))


def _vb_converged(optim: Any, gtol: float) -> bool:
    """BFGS on the ELBO often stops on precision loss at a stationary point; accept a small gradient."""
    if optim is None or bool(getattr(optim, "success", True)):
        return True
    jac = getattr(optim, "jac", None)
    if jac is None:
        return False
    jac = np.asarray(jac, dtype=float)
    return bool(np.all(np.isfinite(jac)) and np.max(np.abs(jac)) <= gtol)


def _fit_binomial(frame: pd.DataFrame, formula: str, spec: ModelSpec, options: FitOptions) -> Tuple[Any, pd.DataFrame, Dict[str, float], float, bool]:
    vc = _vc_formulas(spec)
    model = BinomialBayesMixedGLM.from_formula(formula, vc, frame)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = model.fit_vb()
    converged = _vb_converged(getattr(result, "optim_retvals", None), options.vb_gtol)
    for w in caught:
        if converged and "converge" in str(w.message).lower():
            continue
        warnings.warn(w.message, w.category)

    fe_mean = np.asarray(result.fe_mean)
    names = list(getattr(model, "fep_names", None) or model.exog_names)[: len(fe_mean)]
    table = _coefficient_table(names, fe_mean, np.asarray(result.fe_sd))
    vcp_names = list(getattr(model, "vcp_names", vc.keys()))
    # vcp_mean holds log standard deviations.
    variances = {name: float(np.exp(2 * v)) for name, v in zip(vcp_names, np.asarray(result.vcp_mean))}
    return result, table, variances, _LOGISTIC_SD**2, converged


def _fit_fixed_only(frame: pd.DataFrame, formula: str, spec: ModelSpec) -> Tuple[Any, pd.DataFrame, Dict[str, float], bool]:
    if spec.family is ResponseFamily.LOGIT:
        result = smf.glm(formula=formula, data=frame, family=sm.families.Binomial()).fit()
        converged = bool(getattr(result, "converged", True))
    else:
        result = smf.ols(formula=formula, data=frame).fit()
        converged = True
    params = result.params
    table = _coefficient_table(list(params.index), params.to_numpy(), result.bse.to_numpy(), result.tvalues.to_numpy(), result.pvalues.to_numpy())
    return result, table, {}, converged


def _constant_fit(value: float, terms: Sequence[Term], spec: ModelSpec) -> Tuple[pd.DataFrame, Dict[str, float]]:
    names = [INTERCEPT, *[term_name(t) for t in terms]]
    estimates = [value] + [0.0] * len(terms)
    table = _coefficient_table(names, estimates, [0.0] * len(names))
    return table, {name: 0.0 for name in _vc_formulas(spec)}


def boundary_components(variances: Dict[str, float], scale: float, tol: float) -> List[str]:
    """Names of random effects whose SD, relative to the residual SD, is below ``tol``."""
    return [name for name, var in variances.items() if not np.isfinite(var) or math.sqrt(max(var, 0.0) / scale) < tol]


def _classify_warnings(caught: Sequence[warnings.WarningMessage]) -> List[Warning]:
    caveats: List[Warning] = []
    for w in caught:
        msg = str(w.message)
        lowered = msg.lower()
        if "boundary" in lowered or "singular" in lowered:
            caveats.append(SingularFitWarning(msg))
        elif issubclass(w.category, ConvergenceWarning) or "converge" in lowered:
            caveats.append(NonConvergenceWarning(msg))
        else:
            # Unrelated warnings (pandas, patsy) go back to the caller untouched.
            warnings.warn(w.message, stacklevel=3)
    return caveats


def _dedupe(caveats: Sequence[Warning]) -> Tuple[Warning, ...]:
    seen = set()
    out: List[Warning] = []
    for c in caveats:
        key = (type(c), str(c))
        if key not in seen:
            seen.add(key)
            out.append(c)
    return tuple(out)


def fit_mixed_model(
    df: pd.DataFrame,
    spec: ModelSpec,
    options: Optional[FitOptions] = None,
    gamified_only: Optional[bool] = None,
) -> FittedModel:
    """Fit one outcome with the gamified x group x order fixed structure and random intercepts.

    ``gamified_only`` declares that the outcome was only collected under one gamified level;
    the sample has to agree with the declaration. Non-fatal problems are attached to the
    returned model as caveats and re-issued as warnings.
    """
    options = options or FitOptions()
    needed = [spec.response, *spec.grouping_columns, WITHIN_FACTOR, *BETWEEN_FACTORS]
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise ValueError(f"{spec.outcome}: columns missing from sample: {missing}")

    data = df.dropna(subset=[spec.response])
    _check_sample(data, spec)
    terms = select_terms(data, spec.outcome, gamified_only=gamified_only)
    random_intercepts = _has_random_intercepts(data, spec, terms)
    factors = [WITHIN_FACTOR, *BETWEEN_FACTORS] if terms == FULL_TERMS else list(BETWEEN_FACTORS)
    covariates, encoding = encode_design(data, factors)
    response = spec.family.transform(data[spec.response])
    frame = _model_frame(data, covariates, response, spec)
    formula = _formula(terms)
    logger.info(f"Fitting {spec.outcome} ({spec.family.value}, {spec.random_effects.value}): {formula} on {len(frame)} rows")

    caveats: List[Warning] = []
    result: Any = None
    llf = aic = bic = float("nan")
    if spec.family is not ResponseFamily.LOGIT and float(np.ptp(frame[_RESPONSE])) == 0.0:
        value = float(frame[_RESPONSE].iloc[0])
        table, variances = _constant_fit(value, terms, spec)
        converged = True
        if random_intercepts:
            caveats.append(SingularFitWarning(f"{spec.outcome}: response is constant; random-effect variances fixed at 0"))
        else:
            variances = {}
    elif not random_intercepts:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result, table, variances, converged = _fit_fixed_only(frame, formula, spec)
        llf, aic, bic = float(result.llf), float(result.aic), float(result.bic)
        caveats.extend(_classify_warnings(caught))
        if not converged and not any(isinstance(c, NonConvergenceWarning) for c in caveats):
            caveats.append(NonConvergenceWarning(f"{spec.outcome}: optimizer did not converge"))
    else:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            if spec.family is ResponseFamily.LOGIT:
                result, table, variances, scale, converged = _fit_binomial(frame, formula, spec, options)
            else:
                result, table, variances, scale, converged = _fit_linear(frame, formula, spec, options)
                llf, aic, bic = float(result.llf), float(result.aic), float(result.bic)
        caveats.extend(_classify_warnings(caught))
        if not converged and not any(isinstance(c, NonConvergenceWarning) for c in caveats):
            caveats.append(NonConvergenceWarning(f"{spec.outcome}: optimizer did not converge"))
        tol = options.vb_singular_tol if spec.family is ResponseFamily.LOGIT else options.singular_tol
        boundary = boundary_components(variances, scale, tol)
        if boundary and not any(isinstance(c, SingularFitWarning) for c in caveats):
            caveats.append(SingularFitWarning(f"{spec.outcome}: random-effect variance at boundary for {boundary}"))

    fitted = FittedModel(
        spec=spec,
        terms=tuple(terms),
        encoding=encoding,
        coefficients=table,
        variance_components=variances,
        converged=converged,
        n_obs=len(frame),
        n_subjects=int(frame[_SUBJECT].nunique()),
        n_items=int(frame[_ITEM].nunique()) if _ITEM in frame.columns else 0,
        aic=aic,
        bic=bic,
        llf=llf,
        caveats=_dedupe(caveats),
        result=result,
    )
    for caveat in fitted.caveats:
        logger.warning(f"{spec.outcome}: {type(caveat).__name__}: {caveat}")
        warnings.warn(caveat, stacklevel=2)
    return fitted


def model_diagnostics(model: FittedModel) -> Dict[str, Any]:
    return {
        "aic": float(model.aic),
        "bic": float(model.bic),
        "llf": float(model.llf),
        "converged": bool(model.converged),
        "singular": model.singular,
        "n_obs": model.n_obs,
        "n_subjects": model.n_subjects,
        "n_items": model.n_items,
        "caveats": [f"{type(c).__name__}: {c}" for c in model.caveats],
    }


def fit_flags(model: FittedModel) -> Dict[str, Any]:
    """Reliability flags carried by every table derived from ``model``."""
    return {
        "converged": bool(model.converged),
        "singular": model.singular,
        "caveats": "; ".join(f"{type(c).__name__}: {c}" for c in model.caveats),
    }


def with_fit_flags(table: pd.DataFrame, model: FittedModel) -> pd.DataFrame:
    out = table.copy()
    for name, value in fit_flags(model).items():
        out[name] = value
    return out


def fixed_effects(model: FittedModel) -> pd.DataFrame:
    """Return fixed-effect estimates, standard errors, test statistics and p-values with the fit flags."""
    return with_fit_flags(model.coefficients.reset_index(), model)


def variance_components(model: FittedModel) -> pd.DataFrame:
    rows = [{"group": name, "variance": var, "sd": math.sqrt(max(var, 0.0))} for name, var in model.variance_components.items()]
    return pd.DataFrame(rows, columns=["group", "variance", "sd"])
