"""Configuration and argument parsing for the gamification mixed-model analysis."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .mixed_model import FitOptions


@dataclass
class AnalysisConfig:
    """Configuration for one analysis session."""

    # Data sources (one CSV per analysis pass)
    practice: Optional[Path] = None
    test: Optional[Path] = None
    survey: Optional[Path] = None
    validate: bool = True

    # Outcomes
    outcomes: List[str] = field(default_factory=list)  # empty = full catalogue

    # Model fitting
    method: str = "bfgs"
    maxiter: int = 300
    reml: bool = True
    singular_tol: float = 1e-4

    # Execution / reporting
    max_workers: int = 1
    output_dir: Path = Path("results/gamification")
    log_level: str = "INFO"

    @property
    def pass_paths(self) -> Dict[str, Optional[Path]]:
        return {"practice": self.practice, "test": self.test, "survey": self.survey}

    def fit_options(self) -> FitOptions:
        return FitOptions(method=self.method, maxiter=self.maxiter, reml=self.reml, singular_tol=self.singular_tol)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Fit mixed-effects models and counterfactual predictions for the gamified feedback experiment.")

    # Data sources
    p.add_argument("--practice", type=Path, default=None, help="CSV with practice trials.")
    p.add_argument("--test", type=Path, default=None, help="CSV with post-test trials.")
    p.add_argument("--survey", type=Path, default=None, help="CSV with survey responses (long format: question, rating).")
    p.add_argument("--no-validate", action="store_true", help="Skip row-level schema validation.")

    # Outcomes
    p.add_argument("--outcomes", type=str, default="", help="Comma-separated outcome names (default: all available).")

    # Model fitting
    p.add_argument("--method", type=str, default="bfgs", help="Optimizer for linear mixed models.")
    p.add_argument("--maxiter", type=int, default=300)
    p.add_argument("--ml", action="store_true", help="Fit linear mixed models by ML instead of REML.")
    p.add_argument("--singular-tol", type=float, default=1e-4, help="Relative random-effect SD treated as a singular fit.")

    # Execution / reporting
    p.add_argument("--max-workers", type=int, default=1, help="Processes used to fit outcomes in parallel.")
    p.add_argument("--output-dir", type=Path, default=Path("results/gamification"))
    p.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p


def parse_args(argv: Optional[Sequence[str]] = None) -> AnalysisConfig:
    """Parse command-line arguments and return an AnalysisConfig."""
    args = build_parser().parse_args(argv)
    if args.practice is None and args.test is None and args.survey is None:
        raise SystemExit("At least one of --practice, --test or --survey is required.")
    return AnalysisConfig(
        practice=args.practice,
        test=args.test,
        survey=args.survey,
        validate=not args.no_validate,
        outcomes=[o.strip() for o in args.outcomes.split(",") if o.strip()],
        method=args.method,
        maxiter=args.maxiter,
        reml=not args.ml,
        singular_tol=args.singular_tol,
        max_workers=args.max_workers,
        output_dir=args.output_dir,
        log_level=args.log_level,
    )
