"""Exception types raised by the import engine."""

from __future__ import annotations


class ImporterError(Exception):
    """Base class for all import engine errors."""


class PreconditionError(ImporterError):
    """A batch could not start; nothing was mutated and the call may be retried."""


class MissingImportDataError(PreconditionError):
    def __init__(self, message: str = "Missing required import data") -> None:
        super().__init__(message)


class ImportFileError(PreconditionError):
    """The uploaded file is gone or unreadable."""


class LockContentionError(PreconditionError):
    def __init__(
        self,
        message: str = "Another import is already in progress. Please wait for it to complete.",
    ) -> None:
        super().__init__(message)


class InsufficientMemoryError(PreconditionError):
    """Not enough free process memory to run a batch."""


class ProgressStoreError(ImporterError):
    """The shared progress/lock store could not be reached."""


class FatalBatchError(ImporterError):
    """Unexpected failure in the middle of a batch; the run was terminated."""


class RowSourceError(ImporterError, ValueError):
    """Tabular file could not be opened or parsed."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class MappingValidationError(ImporterError, ValueError):
    """Column mapping or import options were rejected."""

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))
