from __future__ import annotations

import dataclasses
import logging
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from . import aggregate, data_loader, mixed_model, prediction
from .errors import DesignEncodingError, InsufficientDataError
from .mixed_model import FitOptions, FittedModel, ModelSpec, RandomEffects, ResponseFamily

logger = logging.getLogger(__name__)

# One row per subject per block after collapsing trial-level data.
SUBJECT_BLOCK_KEYS: Tuple[str, ...] = ("subject", "block", "condition", "gamified", "exp_group", "exp_order")
SUMMARY_KEYS: Tuple[str, ...] = ("block", "condition", "gamified", "exp_group")

SURVEY_QUESTIONS: Tuple[str, ...] = ("goalsetting", "competition", "enjoyment", "competence", "effort")
# Only asked after the gamified block.
GAMIFIED_ONLY_QUESTIONS: Tuple[str, ...] = ("relevance",)


@dataclass(frozen=True)
class OutcomeSpec:
    """Configuration of one outcome variable: data selection plus its model."""

    name: str
    pass_name: str
    model: ModelSpec
    where: Mapping[str, object] = field(default_factory=dict)
    collapse_stat: Optional[str] = None  # collapse trials to one value per subject and block first
    gamified_only: Optional[bool] = None
    summary_stat: Optional[str] = None  # per-subject statistic for two-stage summaries

    def select(self, frame: pd.DataFrame) -> pd.DataFrame:
        sample = data_loader.select_rows(frame, where=dict(self.where), dropna=[self.model.response])
        if self.collapse_stat is not None:
            sample = aggregate.collapse(sample, self.model.response, SUBJECT_BLOCK_KEYS, stat=self.collapse_stat)
        return sample


@dataclass
class OutcomeResult:
    name: str
    pass_name: str
    status: str
    model: Optional[FittedModel] = None
    coefficients: pd.DataFrame = field(default_factory=pd.DataFrame)
    predictions: Dict[str, pd.DataFrame] = field(default_factory=dict)
    summary: pd.DataFrame = field(default_factory=pd.DataFrame)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _trial_outcomes(pass_name: str) -> List[OutcomeSpec]:
    return [
        OutcomeSpec(
            name=f"{pass_name}_accuracy",
            pass_name=pass_name,
            model=ModelSpec(f"{pass_name}_accuracy", "correct", ResponseFamily.LOGIT, RandomEffects.SUBJECT_ITEM),
        ),
        OutcomeSpec(
            name=f"{pass_name}_rt",
            pass_name=pass_name,
            model=ModelSpec(f"{pass_name}_rt", "rt", ResponseFamily.LOG, RandomEffects.SUBJECT_ITEM),
            where={"correct": True},
            summary_stat="median",
        ),
    ]


def default_outcomes() -> List[OutcomeSpec]:
    outcomes = [*_trial_outcomes("practice"), *_trial_outcomes("test")]
    outcomes.append(
        OutcomeSpec(
            name="practice_score",
            pass_name="practice",
            model=ModelSpec("practice_score", "score", ResponseFamily.IDENTITY, RandomEffects.SUBJECT),
            collapse_stat="sum",
        )
    )
    outcomes.append(
        OutcomeSpec(
            name="test_score",
            pass_name="test",
            model=ModelSpec("test_score", "correct", ResponseFamily.IDENTITY, RandomEffects.SUBJECT),
            collapse_stat="mean",
        )
    )
    for question in (*SURVEY_QUESTIONS, *GAMIFIED_ONLY_QUESTIONS, "jol"):
        outcomes.append(
            OutcomeSpec(
                name=f"survey_{question}",
                pass_name="survey",
                model=ModelSpec(f"survey_{question}", "rating", ResponseFamily.IDENTITY, RandomEffects.SUBJECT),
                where={"question": question},
                gamified_only=True if question in GAMIFIED_ONLY_QUESTIONS else None,
            )
        )
    return outcomes


def _summarise(sample: pd.DataFrame, spec: OutcomeSpec) -> pd.DataFrame:
    keys = [k for k in SUMMARY_KEYS if k in sample.columns]
    if spec.summary_stat is not None:
        return aggregate.nested_aggregate(sample, spec.model.response, keys, unit="subject", stat=spec.summary_stat)
    return aggregate.aggregate(sample, spec.model.response, keys)


def _format_warning(w: warnings.WarningMessage) -> str:
    return f"{w.category.__name__}: {w.message}"


def run_outcome(spec: OutcomeSpec, frame: pd.DataFrame, options: Optional[FitOptions] = None) -> OutcomeResult:
    """Encode, fit and query one outcome; fatal data problems fail only this outcome."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            sample = spec.select(frame)
            summary = _summarise(sample, spec)
            model = mixed_model.fit_mixed_model(sample, spec.model, options=options, gamified_only=spec.gamified_only)
            tables = prediction.run_queries(model)
        except (DesignEncodingError, InsufficientDataError, ValueError, KeyError, np.linalg.LinAlgError) as e:
            logger.error(f"{spec.name} failed: {type(e).__name__}: {e}")
            return OutcomeResult(
                name=spec.name,
                pass_name=spec.pass_name,
                status="failed",
                warnings=[_format_warning(w) for w in caught],
                error=f"{type(e).__name__}: {e}",
            )
    return OutcomeResult(
        name=spec.name,
        pass_name=spec.pass_name,
        status="ok",
        model=model,
        coefficients=mixed_model.fixed_effects(model),
        predictions=tables,
        summary=summary,
        warnings=[_format_warning(w) for w in caught],
    )


def _run_detached(spec: OutcomeSpec, frame: pd.DataFrame, options: Optional[FitOptions]) -> OutcomeResult:
    # statsmodels results stay in the worker; only plain tables travel back.
    result = run_outcome(spec, frame, options)
    if result.model is not None:
        result.model = dataclasses.replace(result.model, result=None)
    return result


def _failed(spec: OutcomeSpec, error: BaseException) -> OutcomeResult:
    return OutcomeResult(name=spec.name, pass_name=spec.pass_name, status="failed", error=f"{type(error).__name__}: {error}")


def run_batch(
    frames: Mapping[str, pd.DataFrame],
    outcomes: Optional[Sequence[OutcomeSpec]] = None,
    options: Optional[FitOptions] = None,
    max_workers: int = 1,
) -> List[OutcomeResult]:
    """Run every outcome whose pass data is available; results keep the catalogue order."""
    outcomes = list(outcomes) if outcomes is not None else default_outcomes()
    runnable = [o for o in outcomes if o.pass_name in frames]
    for skipped in (o for o in outcomes if o.pass_name not in frames):
        logger.info(f"Skipping {skipped.name}: no {skipped.pass_name} data")

    results: Dict[str, OutcomeResult] = {}
    if max_workers <= 1:
        for spec in tqdm(runnable, desc="Fitting outcomes"):
            try:
                results[spec.name] = run_outcome(spec, frames[spec.pass_name], options)
            except Exception as e:
                logger.exception(f"{spec.name} failed unexpectedly: {e}")
                results[spec.name] = _failed(spec, e)
    else:
        pbar = tqdm(total=len(runnable), desc="Fitting outcomes")
        with ProcessPoolExecutor(max_workers=max_workers) as pool:
            futures = {pool.submit(_run_detached, spec, frames[spec.pass_name], options): spec for spec in runnable}
            for fut in as_completed(futures):
                spec = futures[fut]
                try:
                    results[spec.name] = fut.result()
                except Exception as e:
                    logger.exception(f"{spec.name} failed unexpectedly: {e}")
                    results[spec.name] = _failed(spec, e)
                finally:
                    pbar.update(1)
        pbar.close()

    ordered = [results[o.name] for o in runnable]
    failed = [r.name for r in ordered if not r.ok]
    if failed:
        logger.warning(f"Completed with {len(failed)} failed outcome(s): {failed}")
    else:
        logger.info(f"Completed {len(ordered)} outcome(s) successfully.")
    return ordered


def select_outcomes(outcomes: Sequence[OutcomeSpec], names: Sequence[str]) -> List[OutcomeSpec]:
    if not names:
        return list(outcomes)
    known = {o.name for o in outcomes}
    unknown = sorted(set(names) - known)
    if unknown:
        raise ValueError(f"Unknown outcome(s): {unknown}; available: {sorted(known)}")
    return [o for o in outcomes if o.name in set(names)]
