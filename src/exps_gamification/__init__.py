"""
Mixed-model analysis package for the gamified feedback learning experiment.

The package provides:
- Design encoding of the gamified / group / order factors into centered covariates.
- Grouped mean / standard-error summaries, including two-stage per-subject summaries.
- One generic mixed-model fitting engine (linear, log-linear and binomial-logit outcomes).
- Population-level counterfactual predictions over fixed/swept covariate grids.
- A batch runner applying the pipeline to every outcome of the practice, test and survey passes.
"""

__all__ = [
    "aggregate",
    "config",
    "data_loader",
    "design",
    "errors",
    "mixed_model",
    "pipeline",
    "prediction",
]
