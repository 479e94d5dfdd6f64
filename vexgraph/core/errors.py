"""Error kinds raised by the correlation engine."""


class VexGraphError(Exception):
    """Base class for all vexgraph errors."""


class ParseError(VexGraphError, ValueError):
    """A package identity or version range string could not be parsed."""

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class ComparisonError(VexGraphError):
    """Two versions cannot be ordered under the selected scheme."""

    def __init__(self, message: str, left: str | None = None, right: str | None = None):
        super().__init__(message)
        self.left = left
        self.right = right


class EmptyDocumentError(VexGraphError):
    """A document produced no usable statement, entry or edge."""

    def __init__(self, document_id: str, failures: list | None = None):
        super().__init__(
            f"Document {document_id!r} produced no statements or edges",
        )
        self.document_id = document_id
        self.failures = failures or []


class TransactionError(VexGraphError):
    """The persistence layer could not complete an atomic write."""
