import warnings
from types import SimpleNamespace

import numpy as np
import pytest
from statsmodels.regression.mixed_linear_model import MixedLM
from statsmodels.tools.sm_exceptions import ConvergenceWarning
from synthetic import make_trials

from exps_gamification import mixed_model
from exps_gamification.errors import DesignEncodingError, InsufficientDataError, NonConvergenceWarning, SingularFitWarning
from exps_gamification.mixed_model import FitOptions, ModelSpec, RandomEffects, ResponseFamily

SURVEY_SPEC = ModelSpec("survey_enjoyment", "rating", ResponseFamily.IDENTITY, RandomEffects.SUBJECT)
RT_SPEC = ModelSpec("test_rt", "rt", ResponseFamily.LOG, RandomEffects.SUBJECT_ITEM)
ACCURACY_SPEC = ModelSpec("test_accuracy", "correct", ResponseFamily.LOGIT, RandomEffects.SUBJECT_ITEM)


def _fit(df, spec, **kwargs):
    # Boundary estimates are legitimate on small synthetic samples; they are checked separately.
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", SingularFitWarning)
        return mixed_model.fit_mixed_model(df, spec, **kwargs)


def _question(survey, question):
    return survey[survey["question"] == question]


def test_model_fits(survey):
    model = _fit(_question(survey, "enjoyment"), SURVEY_SPEC)
    assert model.converged
    assert model.terms == mixed_model.FULL_TERMS
    assert model.n_subjects == 20
    assert model.n_obs == 40


def test_fixed_effects_table(survey):
    model = _fit(_question(survey, "enjoyment"), SURVEY_SPEC)
    fx = mixed_model.fixed_effects(model)
    assert {"term", "estimate", "std_error", "statistic", "pvalue"}.issubset(fx.columns)
    assert list(fx["term"]) == ["Intercept", "gamified", "gamified:exp_group_c", "gamified:exp_order_c", "gamified:exp_group_c:exp_order_c"]
    assert ((fx["pvalue"] >= 0) & (fx["pvalue"] <= 1)).all()


def test_random_effects_variance(survey):
    model = _fit(_question(survey, "enjoyment"), SURVEY_SPEC)
    assert model.variance_components["subject"] >= 0
    vc = mixed_model.variance_components(model)
    assert list(vc["group"]) == ["subject"]


def test_model_diagnostics(survey):
    model = _fit(_question(survey, "enjoyment"), SURVEY_SPEC)
    diag = mixed_model.model_diagnostics(model)
    assert {"aic", "bic", "llf", "converged", "singular", "caveats"}.issubset(diag.keys())


def test_log_linear_crossed_model(trials):
    model = _fit(trials, RT_SPEC)
    assert set(model.variance_components) == {"subject", "item"}
    assert model.n_items == trials["fact_id"].nunique()
    # Fitted on the log scale: the intercept sits near log(1200 ms).
    assert model.params["Intercept"] == pytest.approx(np.log(1200), abs=0.3)


def test_binomial_accuracy_scenario():
    trials = make_trials(n_subjects=20, n_items=10, p_correct=0.8, seed=3)
    model = _fit(trials, ACCURACY_SPEC)
    assert model.family is ResponseFamily.LOGIT
    assert np.isfinite(model.params).all()
    assert model.converged
    assert not any(isinstance(c, NonConvergenceWarning) for c in model.caveats)
    # Logit of 0.8 is about 1.39.
    assert 0.5 < model.params["Intercept"] < 2.5


def test_reduced_formula_for_gamified_only_question(survey):
    model = _fit(_question(survey, "relevance"), SURVEY_SPEC, gamified_only=True)
    assert model.reduced
    assert model.terms == mixed_model.REDUCED_TERMS
    assert "gamified" not in model.encoding
    # One rating per subject: the subject intercept is not identifiable.
    assert model.variance_components == {}
    assert list(model.params.index) == ["Intercept", "exp_group_c", "exp_order_c", "exp_group_c:exp_order_c"]


def test_reduced_formula_used_when_gamified_is_constant(survey):
    sample = _question(survey, "enjoyment")
    model = _fit(sample[sample["gamified"]], SURVEY_SPEC)
    assert model.reduced
    assert np.isfinite(model.aic)


def test_declared_gamified_only_must_match_data(survey):
    with pytest.raises(DesignEncodingError):
        mixed_model.fit_mixed_model(_question(survey, "enjoyment"), SURVEY_SPEC, gamified_only=True)


def test_insufficient_subjects_error(survey):
    sample = _question(survey, "enjoyment")
    with pytest.raises(InsufficientDataError):
        mixed_model.fit_mixed_model(sample[sample["subject"] == "s00"], SURVEY_SPEC)


def test_unreplicated_item_grouping_error(trials):
    unique_items = trials.assign(fact_id=[f"item{i}" for i in range(len(trials))])
    with pytest.raises(InsufficientDataError):
        mixed_model.fit_mixed_model(unique_items, RT_SPEC)


def test_missing_responses_are_dropped_before_checks(survey):
    sample = _question(survey, "enjoyment").copy()
    sample["rating"] = np.nan
    with pytest.raises(InsufficientDataError):
        mixed_model.fit_mixed_model(sample, SURVEY_SPEC)


def test_log_model_rejects_non_positive_response(trials):
    broken = trials.copy()
    broken.loc[broken.index[0], "rt"] = 0.0
    with pytest.raises(ValueError):
        mixed_model.fit_mixed_model(broken, RT_SPEC)


def test_constant_response_is_flagged_singular(trials):
    flat = trials.assign(rt=1000.0)
    with pytest.warns(SingularFitWarning):
        model = mixed_model.fit_mixed_model(flat, RT_SPEC)
    assert model.singular
    assert model.params["Intercept"] == pytest.approx(np.log(1000.0))
    assert (model.params.drop("Intercept") == 0).all()


def test_non_convergence_is_surfaced(survey, monkeypatch):
    original = mixed_model._fit_linear

    def noisy_fit(*args, **kwargs):
        out = original(*args, **kwargs)
        warnings.warn("Gradient optimization failed, |grad| = 0.5", ConvergenceWarning)
        return out

    monkeypatch.setattr(mixed_model, "_fit_linear", noisy_fit)
    with pytest.warns(NonConvergenceWarning):
        model = _fit(_question(survey, "enjoyment"), SURVEY_SPEC)
    assert any(isinstance(c, NonConvergenceWarning) for c in model.caveats)
    assert model.params.notna().all()


def test_model_spec_validation():
    spec = ModelSpec("x", "rating", family="log", random_effects="subject")
    assert spec.family is ResponseFamily.LOG
    with pytest.raises(ValueError):
        ModelSpec("x", "rt", ResponseFamily.LOG, RandomEffects.SUBJECT_ITEM, item_col=None)
    with pytest.raises(ValueError):
        ModelSpec("x", "rt", family="probit")


def test_fit_options_are_applied(survey):
    model = _fit(_question(survey, "enjoyment"), SURVEY_SPEC, options=FitOptions(reml=False))
    # ML fits report information criteria.
    assert np.isfinite(model.aic)


def test_boundary_fit_with_gradient_optimizer_returns_estimates(survey):
    model = _fit(_question(survey, "goalsetting"), SURVEY_SPEC, options=FitOptions(method="lbfgs"))
    assert np.isfinite(model.params).all()
    assert model.variance_components["subject"] >= 0


def test_singular_hessian_falls_back_to_derivative_free_optimizer(survey, monkeypatch):
    original = MixedLM.fit

    def fragile_fit(self, *args, **kwargs):
        if kwargs.get("method") != "powell":
            raise np.linalg.LinAlgError("Singular matrix")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(MixedLM, "fit", fragile_fit)
    with pytest.warns(NonConvergenceWarning):
        model = _fit(_question(survey, "effort"), SURVEY_SPEC)
    assert np.isfinite(model.params).all()
    assert any("powell" in str(c) for c in model.caveats)


def test_singular_hessian_with_fallback_optimizer_propagates(survey, monkeypatch):
    def broken_fit(self, *args, **kwargs):
        raise np.linalg.LinAlgError("Singular matrix")

    monkeypatch.setattr(MixedLM, "fit", broken_fit)
    with pytest.raises(np.linalg.LinAlgError):
        mixed_model.fit_mixed_model(_question(survey, "effort"), SURVEY_SPEC, options=FitOptions(method="powell"))


def test_fit_flags_travel_with_coefficients(trials):
    with pytest.warns(SingularFitWarning):
        model = mixed_model.fit_mixed_model(trials.assign(rt=1000.0), RT_SPEC)
    fx = mixed_model.fixed_effects(model)
    assert fx["singular"].all()
    assert fx["converged"].all()
    assert fx["caveats"].str.contains("SingularFitWarning").all()


def test_logit_boundary_uses_posterior_tolerance():
    sd = mixed_model._LOGISTIC_SD
    variances = {"subject": (0.01 * sd) ** 2, "item": (0.5 * sd) ** 2}
    options = FitOptions()
    assert mixed_model.boundary_components(variances, sd**2, options.vb_singular_tol) == ["subject"]
    assert mixed_model.boundary_components(variances, sd**2, options.singular_tol) == []
    assert mixed_model.boundary_components({"subject": float("nan")}, 1.0, options.singular_tol) == ["subject"]


def test_vb_stop_on_precision_loss_counts_as_converged():
    assert mixed_model._vb_converged(SimpleNamespace(success=True), 1e-2)
    assert mixed_model._vb_converged(SimpleNamespace(success=False, jac=np.array([1e-4, -3e-3])), 1e-2)
    assert not mixed_model._vb_converged(SimpleNamespace(success=False, jac=np.array([0.5, 1e-4])), 1e-2)
    assert not mixed_model._vb_converged(SimpleNamespace(success=False), 1e-2)
