"""Error taxonomy shared by the runtime components."""
from __future__ import annotations

from typing import Optional


class ProductFlowError(RuntimeError):
    """Base class for every error raised by the runtime."""


class InputError(ProductFlowError):
    """Raised for unknown phases, unknown projects or missing predecessor output."""


class RunConflictError(InputError):
    """Raised when a run is already live for the same (project, phase) key."""

    def __init__(self, project_id: int, phase_index: int) -> None:
        super().__init__(
            f"A run is already active for project {project_id} phase {phase_index}"
        )
        self.project_id = project_id
        self.phase_index = phase_index


class ModelInvocationError(ProductFlowError):
    """Raised when the model transport or API call fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SchemaUnsupportedError(ModelInvocationError):
    """Raised when the model rejects a strict JSON-schema response format."""


class SchemaValidationError(ProductFlowError):
    """Raised when a structured call cannot be decoded after the retry."""

    def __init__(self, message: str, *, contract: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.contract = contract
        self.raw_text = raw_text


class PersistenceError(ProductFlowError):
    """Raised when a trace, artifact or state write fails."""


__all__ = [
    "InputError",
    "ModelInvocationError",
    "PersistenceError",
    "ProductFlowError",
    "RunConflictError",
    "SchemaUnsupportedError",
    "SchemaValidationError",
]
