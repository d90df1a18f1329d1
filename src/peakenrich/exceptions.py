"""Error types raised by the enrichment pipeline."""


class EnrichmentError(Exception):
    """Base class for all pipeline errors."""


class InvalidInputError(EnrichmentError, ValueError):
    """Malformed peak, geneset, locus definition or covariate input."""


class PreconditionViolationError(EnrichmentError, ValueError):
    """Unsupported option value or an impossible request (e.g. wrong method count)."""


class NoCommonGenesetsError(EnrichmentError):
    """The two result sets given to the hybrid join share no gene set."""


class MissingResultsColumnError(EnrichmentError):
    """A hybrid join input cannot be resolved to a valid results table."""

    def __init__(self, input_label: str, column: str, message: str = None):
        self.input_label = input_label
        self.column = column
        if message is None:
            message = f"{input_label.capitalize()} object does not have {column} column"
        super().__init__(message)


class ModelFitError(EnrichmentError):
    """A model could not be fitted.

    Per-gene-set failures are recorded on the run and never escape the engine.
    A failed null model or dispersion pre-fit, shared by every gene set, aborts the run.
    """


class DispatchError(EnrichmentError, RuntimeError):
    """The worker pool itself failed, so the whole batch is aborted."""
