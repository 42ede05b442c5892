"""Application error taxonomy.

Every error raised by the ontology core derives from ``OntologyError`` and
carries a stable ``code`` (used in governance envelopes) and an HTTP
``status_code`` (used by the API layer).
"""

from __future__ import annotations


class OntologyError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(OntologyError):
    """Bad input: unknown id, missing field, malformed payload. Never retried."""

    code = "validation_error"
    status_code = 422


class NotFoundError(ValidationError):
    code = "not_found"
    status_code = 404


class ConflictError(OntologyError):
    """Terminal-state transition or concurrent run. Caller must re-fetch state."""

    code = "conflict"
    status_code = 409


class GenerationError(OntologyError):
    """Generation call failed or returned unparseable output."""

    code = "generation_error"
    status_code = 502

    def __init__(self, message: str = "", raw: str = ""):
        super().__init__(message)
        self.raw = raw


class SchemaMismatchError(ValidationError):
    """A referenced table or column is absent from the snapshot."""

    code = "schema_mismatch"

    def __init__(self, message: str = "", missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class ConfigurationError(OntologyError):
    code = "configuration_error"


class NodeExecutionError(OntologyError):
    """A pipeline node failed. Halts the current run only."""

    code = "node_execution_error"

    def __init__(self, node: str, cause: BaseException):
        super().__init__(f"{node} failed: {cause}")
        self.node = node
        self.cause = cause
