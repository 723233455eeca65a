from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from . import aggregate, data_loader, mixed_model, pipeline
from .config import AnalysisConfig, parse_args

logger = logging.getLogger(__name__)


def write_outcome_tables(result: pipeline.OutcomeResult, output_dir: Path) -> None:
    out = output_dir / result.name
    out.mkdir(parents=True, exist_ok=True)
    result.coefficients.to_csv(out / "coefficients.csv", index=False)
    result.summary.to_csv(out / "summary.csv", index=False)
    for query, table in result.predictions.items():
        table.to_csv(out / f"predictions_{query}.csv", index=False)
    if result.model is not None:
        mixed_model.variance_components(result.model).to_csv(out / "variance_components.csv", index=False)


def write_descriptives(frames: Dict[str, pd.DataFrame], output_dir: Path) -> None:
    """Accuracy and response-time summaries across passes for the plotting collaborator."""
    trial_frames = {k: v for k, v in frames.items() if k in ("practice", "test")}
    if not trial_frames:
        return
    keys = ["block", "condition", "gamified", "exp_group"]
    aggregate.summarise_passes(trial_frames, "correct", keys).to_csv(output_dir / "accuracy_by_condition.csv", index=False)
    rt_parts: List[pd.DataFrame] = []
    for name, frame in trial_frames.items():
        table = aggregate.nested_aggregate(data_loader.select_rows(frame, where={"correct": True}), "rt", keys, stat="median")
        table.insert(0, "pass", name)
        rt_parts.append(table)
    pd.concat(rt_parts, ignore_index=True).to_csv(output_dir / "median_rt_by_condition.csv", index=False)


def diagnostics_report(results: Sequence[pipeline.OutcomeResult]) -> Dict[str, Dict[str, object]]:
    report: Dict[str, Dict[str, object]] = {}
    for result in results:
        entry: Dict[str, object] = {"pass": result.pass_name, "status": result.status, "warnings": result.warnings}
        if result.model is not None:
            entry.update(mixed_model.model_diagnostics(result.model))
            entry["formula"] = result.model.formula()
            entry["centering"] = {name: coding.origin for name, coding in result.model.encoding.items()}
        if result.error:
            entry["error"] = result.error
        report[result.name] = entry
    return report


def run(config: AnalysisConfig) -> List[pipeline.OutcomeResult]:
    config.output_dir.mkdir(parents=True, exist_ok=True)
    frames = data_loader.load_passes(config.pass_paths, validate=config.validate)
    outcomes = pipeline.select_outcomes(pipeline.default_outcomes(), config.outcomes)

    results = pipeline.run_batch(frames, outcomes, options=config.fit_options(), max_workers=config.max_workers)
    for result in results:
        if result.ok:
            write_outcome_tables(result, config.output_dir)
    write_descriptives(frames, config.output_dir)

    report = diagnostics_report(results)
    (config.output_dir / "diagnostics.json").write_text(json.dumps(report, indent=2, default=str))
    return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    config = parse_args(argv)
    logging.basicConfig(level=getattr(logging, config.log_level), format="%(asctime)s - %(levelname)s - %(message)s")
    results = run(config)
    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
