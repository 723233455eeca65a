from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Type

import pandas as pd
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

PASSES = ("practice", "test", "survey")

DESIGN_COLUMNS = ["subject", "block", "condition", "gamified", "exp_group", "exp_order"]

# Columns each analysis pass must provide, on top of the design columns.
PASS_COLUMNS: Dict[str, List[str]] = {
    "practice": ["fact_id", "correct", "rt"],
    "test": ["fact_id", "correct", "rt"],
    "survey": ["question", "rating"],
}


class TrialRecord(BaseModel):
    """One practice or test trial."""

    subject: str
    block: int = Field(ge=1, le=2)
    condition: str
    gamified: bool
    exp_group: str
    exp_order: str
    fact_id: str
    correct: Optional[bool] = None  # None for non-responses
    rt: Optional[float] = None  # ms; undefined without a response
    score: Optional[float] = None

    @field_validator("rt")
    @classmethod
    def _positive_rt(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("response time must be positive")
        return value


class SurveyResponse(BaseModel):
    """One rating given to one survey question after a block."""

    subject: str
    block: int = Field(ge=1, le=2)
    condition: str
    gamified: bool
    exp_group: str
    exp_order: str
    question: str
    rating: Optional[float] = None


RECORD_TYPES: Dict[str, Type[BaseModel]] = {
    "practice": TrialRecord,
    "test": TrialRecord,
    "survey": SurveyResponse,
}


def required_columns(pass_name: str) -> List[str]:
    if pass_name not in PASS_COLUMNS:
        raise ValueError(f"Unknown analysis pass: {pass_name}")
    return [*DESIGN_COLUMNS, *PASS_COLUMNS[pass_name]]


def validate_columns(df: pd.DataFrame, pass_name: str) -> None:
    """Raise if the pass frame lacks any required column."""
    missing = [c for c in required_columns(pass_name) if c not in df.columns]
    if missing:
        raise ValueError(f"Required columns missing for {pass_name} data: {missing}")


def validate_non_empty(df: pd.DataFrame, pass_name: str = "") -> None:
    """Raise if DataFrame is empty."""
    if df.empty:
        raise ValueError(f"{pass_name or 'Analysis'} data is empty.")


def validate_records(df: pd.DataFrame, pass_name: str) -> None:
    """Validate every row against the pass record schema."""
    model = RECORD_TYPES[pass_name]
    fields = list(model.model_fields)
    rows = df[[c for c in fields if c in df.columns]].astype(object)
    rows = rows.where(rows.notna(), None)
    errors = 0
    for idx, row in enumerate(rows.to_dict(orient="records")):
        try:
            model.model_validate(row)
        except ValidationError as e:
            errors += 1
            if errors <= 5:
                logger.error(f"Invalid {pass_name} row {idx}: {e.errors()[0]['msg']}")
    if errors:
        raise ValueError(f"{errors} invalid row(s) in {pass_name} data")


def records_to_frame(records: Iterable[BaseModel]) -> pd.DataFrame:
    return pd.DataFrame([r.model_dump() for r in records])


def _to_bool(values: pd.Series) -> pd.Series:
    if values.dtype == bool or str(values.dtype) == "boolean":
        return values.astype("boolean")
    mapping = {"true": True, "false": False, "1": True, "0": False, "1.0": True, "0.0": False}
    return values.map(lambda v: mapping.get(str(v).strip().lower()) if pd.notna(v) else pd.NA).astype("boolean")


def prepare_pass_frame(df: pd.DataFrame, pass_name: str, validate: bool = True) -> pd.DataFrame:
    """Normalise dtypes of a pass frame so every downstream step sees the same schema."""
    validate_columns(df, pass_name)
    validate_non_empty(df, pass_name)
    out = df.copy()
    out["subject"] = out["subject"].astype(str)
    out["block"] = out["block"].astype(int)
    out["gamified"] = _to_bool(out["gamified"])
    if out["gamified"].isna().any():
        raise ValueError(f"{pass_name} data has missing gamified flags")
    out["gamified"] = out["gamified"].astype(bool)
    for col in ("condition", "exp_group", "exp_order"):
        out[col] = out[col].astype(str)
    if "fact_id" in out.columns:
        out["fact_id"] = out["fact_id"].astype(str)
    if "correct" in out.columns:
        out["correct"] = _to_bool(out["correct"])
        if "score" not in out.columns:
            # Without a recorded score each correct response earns one point.
            out["score"] = out["correct"].astype("float64")
    for col in ("rt", "score", "rating"):
        if col in out.columns:
            out[col] = pd.to_numeric(out[col], errors="coerce")
    if "rt" in out.columns:
        # Non-responses carry no response time.
        out.loc[out["correct"].isna(), "rt"] = float("nan")
    if validate:
        validate_records(out, pass_name)
    return out


def load_pass(path: Path, pass_name: str, validate: bool = True) -> pd.DataFrame:
    """Load one analysis pass from CSV and return it with standardized dtypes."""
    if not path.exists():
        raise FileNotFoundError(f"{pass_name} data not found at {path}")
    df = pd.read_csv(path)
    logger.info(f"Loaded {len(df)} {pass_name} rows from {path}")
    return prepare_pass_frame(df, pass_name, validate=validate)


def load_passes(paths: Dict[str, Optional[Path]], validate: bool = True) -> Dict[str, pd.DataFrame]:
    frames: Dict[str, pd.DataFrame] = {}
    for name, path in paths.items():
        if path is None:
            continue
        frames[name] = load_pass(path, name, validate=validate)
    if not frames:
        raise FileNotFoundError("No analysis pass data was provided")
    return frames


def select_rows(df: pd.DataFrame, where: Optional[Dict[str, object]] = None, dropna: Sequence[str] = ()) -> pd.DataFrame:
    """Subset rows matching every column == value pair in ``where`` and drop missing values."""
    out = df
    for col, value in (where or {}).items():
        if col not in out.columns:
            raise ValueError(f"Cannot filter on missing column: {col}")
        out = out[(out[col] == value).fillna(False).astype(bool)]
    if dropna:
        out = out.dropna(subset=list(dropna))
    return out.copy()
