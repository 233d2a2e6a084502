"""
Error and warning taxonomy.

Configuration problems are fatal exceptions. Data-quality problems are
warnings: the offending rows are excluded, counted and reported.
"""


class CounterfactualError(Exception):
    pass


class ConfigError(CounterfactualError, ValueError):
    """Malformed analysis configuration (window, age breaks, weight table)."""


class UnmappedCategory(CounterfactualError, KeyError):
    """One or more survey response categories have no configured weight."""

    def __init__(self, categories):
        self.categories = sorted(str(c) for c in categories)
        super().__init__(self.categories)

    def __str__(self):
        listed = ", ".join(repr(c) for c in self.categories)
        return f"{len(self.categories)} response categories have no weight: {listed}"


class AmbiguousMatch(UserWarning):
    """A survey response had two or more candidate donations and was dropped."""


class UnknownDemographic(UserWarning):
    """Records with missing or unparseable age/gender were excluded from strata."""


class FitConvergenceWarning(UserWarning):
    """The model fitting engine reported a convergence problem."""
