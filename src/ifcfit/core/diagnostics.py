"""Warning categories for non-fatal numerical conditions."""

from __future__ import annotations


class RankDeficiencyWarning(UserWarning):
    """The fitting matrix does not have full column rank; the solution is not unique."""


class ConvergenceWarning(UserWarning):
    """An iterative solver stopped at its iteration cap."""
