"""
Custom exceptions for the cairn entity store and sync engine.

Exception Hierarchy:
    CairnError (base)
    ├── EntityNotFoundError (no entity with that ID)
    ├── UnknownEntityTypeError (discriminator not in the registry)
    ├── ParseError (persisted content is malformed)
    ├── CollisionError (ID already taken after all retries)
    ├── IntegrityError (immutable field divergence, fatal for a merge)
    ├── InvalidChangeError (a create or update touches reserved or immutable fields)
    ├── AtticEntryNotFoundError (no attic entry matches a reference)
    ├── RestoreError (archived value cannot be reapplied)
    ├── GitError (a git command failed)
    │   └── PushRejectedError (non-fast-forward push)
    └── SyncRetryExhaustedError (bounded retries used up)

Integrity violations are the only errors that require an operator; everything
else is locally recoverable and leaves persisted state valid.

Example:
    >>> from cairn.core.exceptions import IntegrityError
    >>> try:
    ...     raise IntegrityError("ms-abc", "body", "immutable field diverged")
    ... except IntegrityError as e:
    ...     print(f"{e.entity_id}.{e.field}: {e}")
"""

from __future__ import annotations

from pathlib import Path


class CairnError(Exception):
    """
    Base exception for all cairn errors.

    Attributes:
        message: Human-readable error message
        context: Optional dictionary of additional context
    """

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.message


class EntityNotFoundError(CairnError):
    """Raised when reading an entity ID that has no file in its collection."""

    def __init__(self, entity_id: str, **context: object) -> None:
        super().__init__(f"Entity not found: {entity_id}", **context)
        self.entity_id = entity_id


class UnknownEntityTypeError(CairnError):
    """Raised when a type discriminator or ID prefix is not registered."""

    def __init__(self, type_code: str, **context: object) -> None:
        super().__init__(f"Unknown entity type: {type_code!r}", **context)
        self.type_code = type_code


class ParseError(CairnError):
    """
    Raised when persisted entity content cannot be parsed or validated.

    Parse errors are surfaced, never auto-repaired. During sync they mark the
    affected entity as inconsistent without aborting unrelated entities.

    Attributes:
        path: File (or branch path) holding the malformed content, if known
    """

    def __init__(self, message: str, path: Path | str | None = None, **context: object) -> None:
        super().__init__(message, **context)
        self.path = path


class CollisionError(CairnError):
    """
    Raised when an entity write targets an ID that already exists.

    The entity service retries with a fresh ID; this only escapes once the
    bounded attempt count is used up.
    """

    def __init__(self, entity_id: str, attempts: int = 1, **context: object) -> None:
        super().__init__(
            f"ID collision on {entity_id} (after {attempts} attempt(s))", **context
        )
        self.entity_id = entity_id
        self.attempts = attempts


class IntegrityError(CairnError):
    """
    Raised when two copies of an entity disagree on an immutable field.

    This is not a mergeable conflict: the merge for that entity is aborted
    and the violation is surfaced to the operator.

    Attributes:
        entity_id: ID of the entity whose copies diverged
        field: Name of the immutable field
    """

    def __init__(self, entity_id: str, field: str, message: str, **context: object) -> None:
        super().__init__(f"Integrity violation on {entity_id}.{field}: {message}", **context)
        self.entity_id = entity_id
        self.field = field


class InvalidChangeError(CairnError):
    """
    Raised when a create or update cannot be applied.

    Covers reserved bookkeeping fields, immutable fields, unknown fields and
    values that fail model validation. Nothing is written.
    """

    def __init__(self, message: str, entity_id: str | None = None, **context: object) -> None:
        super().__init__(message, **context)
        self.entity_id = entity_id


class AtticEntryNotFoundError(CairnError):
    """Raised when an attic reference does not resolve to exactly one entry."""

    def __init__(self, ref: str, **context: object) -> None:
        super().__init__(f"Attic entry not found: {ref}", **context)
        self.ref = ref


class RestoreError(CairnError):
    """Raised when an archived value cannot be reapplied to its entity."""


class GitError(CairnError):
    """
    Raised when a git operation fails.

    Attributes:
        command: The full command line that failed
        stderr: Captured standard error of the command
    """

    def __init__(
        self, message: str, command: list[str] | None = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class PushRejectedError(GitError):
    """Raised when the remote refuses a push because another writer got there first."""


class SyncRetryExhaustedError(CairnError):
    """
    Raised when a sync cycle keeps failing after the bounded number of attempts.

    Local entity state is left valid; running sync again resumes from it.

    Attributes:
        attempts: Number of attempts made
        last_error: The error from the final attempt
    """

    def __init__(self, attempts: int, last_error: Exception | None = None) -> None:
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Sync failed after {attempts} attempt(s){detail}")
        self.attempts = attempts
        self.last_error = last_error
