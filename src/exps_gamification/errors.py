"""Error and warning taxonomy for the gamification analysis pipeline."""

from __future__ import annotations


class DesignEncodingError(ValueError):
    """A design factor has malformed or incomplete levels in the analysis sample."""


class InsufficientDataError(ValueError):
    """A model or aggregate cannot be computed from the available rows."""


class NonConvergenceWarning(UserWarning):
    """The optimiser stopped without converging; estimates may be unreliable."""


class SingularFitWarning(UserWarning):
    """A random-effect variance was estimated at its boundary."""


class UndefinedStatisticWarning(UserWarning):
    """A standard error is undefined because the cell has fewer than two values."""
