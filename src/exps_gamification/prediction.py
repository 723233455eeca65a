"""Population-level (marginal) predictions from fitted outcome models.

Every "is condition A different from condition B, holding the other factors at the grand
mean" question is one call to ``prediction_grid`` with a different choice of which
covariates are fixed and which are swept. Random effects are held at zero, so predictions
describe a typical subject and item rather than any specific one.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .design import DesignEncoding
from .mixed_model import GAMIFIED, GROUP, INTERCEPT, ORDER, FittedModel, term_name, with_fit_flags

logger = logging.getLogger(__name__)

PREDICTION = "prediction"
LINEAR_PREDICTOR = "linear_predictor"


@dataclass(frozen=True)
class PredictionQuery:
    """A named fixed/swept partition of a model's covariates."""

    name: str
    fixed: Mapping[str, Any] = field(default_factory=dict)
    levels: Mapping[str, Sequence[float]] = field(default_factory=dict)


def _resolve_value(encoding: DesignEncoding, covariate: str, value: Any) -> float:
    # Numeric values are already on the covariate scale; anything else is a raw level label.
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, float, np.number)):
        return encoding[covariate].value_of(value)
    return float(value)


def linear_predictor(model: FittedModel, points: pd.DataFrame) -> np.ndarray:
    """Fixed-effect linear predictor for a frame of fully specified grid points."""
    missing = [c for c in model.covariates if c not in points.columns]
    if missing:
        raise ValueError(f"{model.outcome}: grid points missing covariates {missing}")
    params = model.params
    eta = np.full(len(points), float(params[INTERCEPT]))
    for term in model.terms:
        column = np.ones(len(points))
        for name in term:
            column = column * points[name].to_numpy(dtype=float)
        eta = eta + float(params[term_name(term)]) * column
    return eta


def prediction_grid(
    model: FittedModel,
    fixed: Optional[Mapping[str, Any]] = None,
    levels: Optional[Mapping[str, Sequence[float]]] = None,
) -> pd.DataFrame:
    """Cartesian grid of marginal predictions on the original outcome scale.

    Covariates named in ``fixed`` keep the given value (a number on the covariate scale, or a
    raw level label such as ``True`` or ``"A"`` mapped through the stored coding). All other
    covariates are swept over the values observed in the training sample, unless ``levels``
    gives an explicit set, e.g. ``{"exp_order_c": [0.0]}`` for the grand mean. Every row carries
    the model's ``converged`` / ``singular`` / ``caveats`` flags.
    """
    fixed = dict(fixed or {})
    levels = dict(levels or {})
    covariates = model.covariates
    unknown = sorted((set(fixed) | set(levels)) - set(covariates))
    if unknown:
        raise ValueError(f"{model.outcome}: unknown covariates {unknown}; model uses {list(covariates)}")
    overlap = sorted(set(fixed) & set(levels))
    if overlap:
        raise ValueError(f"{model.outcome}: covariates both fixed and swept: {overlap}")

    axes: List[List[float]] = []
    for name in covariates:
        if name in fixed:
            axes.append([_resolve_value(model.encoding, name, fixed[name])])
        elif name in levels:
            values = [_resolve_value(model.encoding, name, v) for v in levels[name]]
            if not values:
                raise ValueError(f"{model.outcome}: empty level set for '{name}'")
            axes.append(values)
        else:
            axes.append(list(model.encoding[name].observed_values))

    grid = pd.DataFrame(list(itertools.product(*axes)), columns=list(covariates), dtype=float)
    eta = linear_predictor(model, grid)
    grid[LINEAR_PREDICTOR] = eta
    grid[PREDICTION] = model.family.inverse(eta)
    return with_fit_flags(grid, model)


def predict(model: FittedModel, new_data: pd.DataFrame) -> np.ndarray:
    """Marginal predictions for rows carrying raw design factors (gamified, exp_group, ...)."""
    covariates = model.encoding.transform(new_data)
    return model.family.inverse(linear_predictor(model, covariates))


def label_levels(grid: pd.DataFrame, model: FittedModel) -> pd.DataFrame:
    """Attach raw factor labels to covariate columns; values off the coding stay unlabelled."""
    out = grid.copy()
    for name in model.covariates:
        coding = model.encoding[name]
        lookup = {round(v, 12): level for v, level in zip(coding.observed_values, coding.levels)}
        out[coding.factor if coding.factor != name else f"{name}_level"] = [lookup.get(round(float(v), 12), pd.NA) for v in out[name]]
    return out


def standard_queries(model: FittedModel) -> List[PredictionQuery]:
    """Fixed/swept partitions answering the recurring analysis questions."""
    if model.reduced:
        return [
            PredictionQuery("grand_mean", fixed={GROUP: 0.0, ORDER: 0.0}),
            PredictionQuery("group", fixed={ORDER: 0.0}),
            PredictionQuery("order", fixed={GROUP: 0.0}),
            PredictionQuery("group_x_order"),
        ]
    return [
        PredictionQuery("gamified", fixed={GROUP: 0.0, ORDER: 0.0}),
        PredictionQuery("gamified_x_group", fixed={ORDER: 0.0}),
        PredictionQuery("gamified_x_order", fixed={GROUP: 0.0}),
        PredictionQuery("full_design"),
    ]


def run_queries(model: FittedModel, queries: Optional[Sequence[PredictionQuery]] = None) -> Dict[str, pd.DataFrame]:
    tables: Dict[str, pd.DataFrame] = {}
    for query in queries if queries is not None else standard_queries(model):
        grid = prediction_grid(model, fixed=query.fixed, levels=query.levels)
        tables[query.name] = label_levels(grid, model)
        logger.debug(f"{model.outcome}/{query.name}: {len(grid)} grid points")
    return tables


def gamified_effect(model: FittedModel, fixed: Optional[Mapping[str, Any]] = None) -> float:
    """Difference in predicted response, gamified minus control, at the given covariate values."""
    if model.reduced:
        raise ValueError(f"{model.outcome}: model has no gamified term")
    base = {GROUP: 0.0, ORDER: 0.0, **dict(fixed or {})}
    grid = prediction_grid(model, fixed=base, levels={GAMIFIED: [0.0, 1.0]})
    return float(grid[PREDICTION].iloc[1] - grid[PREDICTION].iloc[0])
