import warnings

import numpy as np
import pytest
from scipy.special import expit
from synthetic import make_trials

from exps_gamification import mixed_model, prediction
from exps_gamification.errors import SingularFitWarning
from exps_gamification.mixed_model import GAMIFIED, GROUP, ORDER, ModelSpec, RandomEffects, ResponseFamily

SURVEY_SPEC = ModelSpec("survey_enjoyment", "rating", ResponseFamily.IDENTITY, RandomEffects.SUBJECT)
RT_SPEC = ModelSpec("test_rt", "rt", ResponseFamily.LOG, RandomEffects.SUBJECT_ITEM)
ACCURACY_SPEC = ModelSpec("test_accuracy", "correct", ResponseFamily.LOGIT, RandomEffects.SUBJECT_ITEM)


def _fit(df, spec, **kwargs):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", SingularFitWarning)
        return mixed_model.fit_mixed_model(df, spec, **kwargs)


@pytest.fixture(scope="module")
def survey_model(survey):
    return _fit(survey[survey["question"] == "enjoyment"], SURVEY_SPEC)


@pytest.fixture(scope="module")
def rt_model(trials):
    return _fit(trials, RT_SPEC)


@pytest.fixture(scope="module")
def accuracy_model():
    return _fit(make_trials(n_subjects=20, n_items=10, p_correct=0.8, seed=3), ACCURACY_SPEC)


def test_grid_sweeps_observed_levels(survey_model):
    grid = prediction.prediction_grid(survey_model)
    assert len(grid) == 2 * 2 * 2
    assert set(grid[GROUP]) == set(survey_model.encoding[GROUP].observed_values)


def test_fixed_covariates_pass_through(survey_model):
    grid = prediction.prediction_grid(survey_model, fixed={GROUP: 0.0})
    assert len(grid) == 4
    assert (grid[GROUP] == 0.0).all()


def test_explicit_levels(survey_model):
    grid = prediction.prediction_grid(survey_model, fixed={GROUP: 0.0}, levels={ORDER: [0.0]})
    assert len(grid) == 2
    assert list(grid[GAMIFIED]) == [0.0, 1.0]


def test_log_model_predictions_on_response_scale(rt_model):
    grid = prediction.prediction_grid(rt_model, fixed={GROUP: 0.0, ORDER: 0.0})
    assert np.allclose(grid[prediction.PREDICTION], np.exp(grid[prediction.LINEAR_PREDICTOR]))
    # Around 1200 ms, not around log(1200).
    assert (grid[prediction.PREDICTION] > 500).all()


def test_constant_response_grand_mean():
    flat = make_trials(n_subjects=10, n_items=5).assign(rt=1000.0)
    model = _fit(flat, RT_SPEC)
    grid = prediction.prediction_grid(model, fixed={GAMIFIED: 0.0, GROUP: 0.0, ORDER: 0.0})
    assert grid[prediction.PREDICTION].iloc[0] == pytest.approx(1000.0)


def test_accuracy_prediction_is_a_probability(accuracy_model):
    grid = prediction.prediction_grid(accuracy_model, fixed={GAMIFIED: False, GROUP: 0.0, ORDER: 0.0})
    assert len(grid) == 1
    p = grid[prediction.PREDICTION].iloc[0]
    assert 0.0 < p < 1.0
    assert p == pytest.approx(expit(grid[prediction.LINEAR_PREDICTOR].iloc[0]))


def test_unknown_covariate_rejected(survey_model):
    with pytest.raises(ValueError):
        prediction.prediction_grid(survey_model, fixed={"rt": 1.0})


def test_fixed_and_swept_overlap_rejected(survey_model):
    with pytest.raises(ValueError):
        prediction.prediction_grid(survey_model, fixed={GROUP: 0.0}, levels={GROUP: [0.0]})


def test_level_labels_match_numeric_values(survey_model):
    points = survey_model.encoding[GROUP].value_of("points")
    by_label = prediction.prediction_grid(survey_model, fixed={GAMIFIED: True, GROUP: "points", ORDER: 0.0})
    by_value = prediction.prediction_grid(survey_model, fixed={GAMIFIED: 1.0, GROUP: points, ORDER: 0.0})
    assert by_label[prediction.PREDICTION].iloc[0] == pytest.approx(by_value[prediction.PREDICTION].iloc[0])


def test_predict_raw_rows_matches_grid(survey, survey_model):
    row = survey[survey["question"] == "enjoyment"].iloc[[0]]
    predicted = prediction.predict(survey_model, row)
    grid = prediction.prediction_grid(
        survey_model,
        fixed={GAMIFIED: bool(row["gamified"].iloc[0]), GROUP: row["exp_group"].iloc[0], ORDER: row["exp_order"].iloc[0]},
    )
    assert predicted[0] == pytest.approx(grid[prediction.PREDICTION].iloc[0])


def test_gamified_effect_equals_coefficient_at_grand_mean(survey_model):
    effect = prediction.gamified_effect(survey_model)
    assert effect == pytest.approx(survey_model.params[GAMIFIED])


def test_standard_queries(survey, survey_model):
    assert [q.name for q in prediction.standard_queries(survey_model)] == ["gamified", "gamified_x_group", "gamified_x_order", "full_design"]
    tables = prediction.run_queries(survey_model)
    assert {"gamified_level", "exp_group", "exp_order"}.issubset(tables["full_design"].columns)
    assert len(tables["gamified"]) == 2

    relevance = _fit(survey[survey["question"] == "relevance"], SURVEY_SPEC, gamified_only=True)
    assert [q.name for q in prediction.standard_queries(relevance)] == ["grand_mean", "group", "order", "group_x_order"]
    grand_mean = prediction.run_queries(relevance)["grand_mean"]
    assert len(grand_mean) == 1
    with pytest.raises(ValueError):
        prediction.gamified_effect(relevance)


def test_grid_reports_singular_fit():
    flat = make_trials(n_subjects=10, n_items=5).assign(rt=1000.0)
    model = _fit(flat, RT_SPEC)
    grid = prediction.prediction_grid(model)
    assert grid["singular"].all()
    assert grid["caveats"].str.contains("SingularFitWarning").all()
    labelled = prediction.run_queries(model)["gamified"]
    assert labelled["singular"].all()
