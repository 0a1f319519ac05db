"""Exception and warning types raised by the panel pipeline."""


class CodPanelError(Exception):
    """Base class for errors raised by cod_panel."""


class DataIntegrityError(CodPanelError):
    """Raised when a dataset cannot be keyed: missing key columns, schema
    mismatch, no rows left after key normalization, or duplicate keys.

    Fatal to the affected dataset only.
    """


class NormalizationError(CodPanelError, ValueError):
    """Raised when counts cannot be turned into proportions at all
    (negative counts, or no row with a positive total)."""


class CodPanelWarning(UserWarning):
    """Base class for non-fatal conditions reported by cod_panel."""


class InsufficientJoinDataWarning(CodPanelWarning):
    """A covariate/cause pair had fewer matched rows than the configured minimum."""


class ConvergenceWarning(CodPanelWarning):
    """A k-means restart reached its iteration cap without stabilizing."""
