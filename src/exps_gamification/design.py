from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Sequence, Tuple

import pandas as pd

from .errors import DesignEncodingError

logger = logging.getLogger(__name__)

# Within-subject factor first; group and order are between-subject counterbalancing factors.
WITHIN_FACTOR = "gamified"
BETWEEN_FACTORS: Tuple[str, ...] = ("exp_group", "exp_order")


@dataclass(frozen=True)
class FactorCoding:
    """Numeric coding of one binary design factor.

    The first level (in sorted order) maps to 0 and the second to 1; ``origin`` is
    subtracted afterwards. For centered factors the origin is the mean 0/1 code over
    the fitting sample, so the covariate averages exactly zero over that sample.
    """

    factor: str
    covariate: str
    levels: Tuple[Any, Any]
    origin: float
    centered: bool

    def value_of(self, level: Any) -> float:
        if level == self.levels[0]:
            return 0.0 - self.origin
        if level == self.levels[1]:
            return 1.0 - self.origin
        raise DesignEncodingError(f"Level {level!r} was not observed for factor '{self.factor}' (levels: {self.levels}).")

    def encode(self, values: pd.Series) -> pd.Series:
        if values.isna().any():
            raise DesignEncodingError(f"Factor '{self.factor}' has missing values.")
        unseen = set(values.unique()) - set(self.levels)
        if unseen:
            raise DesignEncodingError(f"Unseen levels for factor '{self.factor}': {sorted(map(str, unseen))}")
        codes = (values == self.levels[1]).astype(float)
        return (codes - self.origin).rename(self.covariate)

    @property
    def observed_values(self) -> Tuple[float, float]:
        return (self.value_of(self.levels[0]), self.value_of(self.levels[1]))


def _two_levels(values: pd.Series, name: str) -> Tuple[Any, Any]:
    if values.isna().any():
        raise DesignEncodingError(f"Factor '{name}' has missing values in the analysis sample.")
    levels = sorted(values.unique().tolist())
    if len(levels) != 2:
        raise DesignEncodingError(f"Factor '{name}' must take exactly two levels in the analysis sample, found {len(levels)}: {levels}")
    return levels[0], levels[1]


def encode_factor(values: pd.Series, name: str, centered: bool = True) -> FactorCoding:
    """Build the coding of a binary factor from the full fitting sample."""
    levels = _two_levels(values, name)
    origin = float((values == levels[1]).mean()) if centered else 0.0
    covariate = f"{name}_c" if centered else name
    return FactorCoding(factor=name, covariate=covariate, levels=levels, origin=origin, centered=centered)


class DesignEncoding(Mapping[str, FactorCoding]):
    """Covariate name -> coding, kept alongside a fitted model."""

    def __init__(self, codings: Sequence[FactorCoding]):
        self._codings: Dict[str, FactorCoding] = {c.covariate: c for c in codings}

    def __getitem__(self, covariate: str) -> FactorCoding:
        return self._codings[covariate]

    def __iter__(self) -> Iterator[str]:
        return iter(self._codings)

    def __len__(self) -> int:
        return len(self._codings)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}: origin={v.origin:.4f}" for k, v in self._codings.items())
        return f"DesignEncoding({inner})"

    def by_factor(self, factor: str) -> FactorCoding:
        for coding in self._codings.values():
            if coding.factor == factor:
                return coding
        raise KeyError(factor)

    def transform(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Encode raw factor columns of ``frame`` with the stored origins."""
        return pd.DataFrame({name: coding.encode(frame[coding.factor]) for name, coding in self._codings.items()}, index=frame.index)


def check_factor_consistency(frame: pd.DataFrame, factors: Sequence[str], unit: Sequence[str] = ("subject", "block")) -> None:
    """Raise if any (subject, block) cell carries more than one value of a factor."""
    unit = [u for u in unit if u in frame.columns]
    if not unit:
        return
    for factor in factors:
        counts = frame.groupby(unit, observed=True)[factor].nunique(dropna=False)
        bad = counts[counts > 1]
        if not bad.empty:
            cells = [str(idx) for idx in bad.index[:5]]
            raise DesignEncodingError(f"Factor '{factor}' takes several values within {len(bad)} cell(s), e.g. {', '.join(cells)}")


def encode_design(
    frame: pd.DataFrame,
    factors: Sequence[str] = (WITHIN_FACTOR, *BETWEEN_FACTORS),
    uncentered: Sequence[str] = (WITHIN_FACTOR,),
) -> Tuple[pd.DataFrame, DesignEncoding]:
    """Encode every requested factor over the given sample.

    Returns the covariate frame (same index as ``frame``) and the encoding to keep
    with the fitted model.
    """
    missing = [f for f in factors if f not in frame.columns]
    if missing:
        raise DesignEncodingError(f"Design factors missing from the sample: {missing}")
    check_factor_consistency(frame, factors)
    codings = [encode_factor(frame[f], f, centered=f not in uncentered) for f in factors]
    encoding = DesignEncoding(codings)
    covariates = encoding.transform(frame)
    for name, coding in encoding.items():
        if coding.centered:
            logger.debug(f"Centered {name}: levels={coding.levels} origin={coding.origin:.4f} mean={covariates[name].mean():.2e}")
    return covariates, encoding
