"""Exception taxonomy for PKI operations."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import MaterializationResult


class PKIOperationError(Exception):
    """Parent of every error raised by the orchestrator."""

    retryable: bool = False


class ToolkitUnavailable(PKIOperationError):
    """The CA toolkit could not be located or provisioned."""


class InvalidIdentifier(PKIOperationError):
    """Entity name rejected before any toolkit invocation."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"invalid identifier {name!r}: {reason}")
        self.name = name
        self.reason = reason


class IdentifierAlreadyUsed(PKIOperationError):
    """Name was revoked and cannot be issued again."""

    def __init__(self, name: str) -> None:
        super().__init__(f"identifier {name!r} was revoked and cannot be reissued")
        self.name = name


class UnknownIdentifier(PKIOperationError):
    """No certificate has ever been issued under this name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"no certificate issued for {name!r}")
        self.name = name


class StepExecutionFailure(PKIOperationError):
    """A toolkit subprocess exited non-zero or timed out."""

    def __init__(
        self,
        step: str,
        exit_code: int | None,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        if timed_out:
            message = f"step {step!r} timed out"
        else:
            message = f"step {step!r} failed with exit code {exit_code}"
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.step = step
        self.exit_code = exit_code
        self.stderr = stderr
        self.timed_out = timed_out


class PartialMaterializationFailure(PKIOperationError):
    """Toolkit work succeeded but some artifacts did not reach the public directory."""

    def __init__(self, entity: str, result: MaterializationResult) -> None:
        failed = ", ".join(failure.artifact.dest_name for failure in result.failed)
        super().__init__(f"materialization incomplete for {entity!r}: {failed}")
        self.entity = entity
        self.result = result


class ConcurrencyRejected(PKIOperationError):
    """The concurrency gate was not acquired within the bounded wait."""

    retryable = True

    def __init__(self, store: str, operation: str, waited: float) -> None:
        super().__init__(
            f"PKI store {store} busy; {operation} rejected after waiting {waited:.1f}s"
        )
        self.store = store
        self.operation = operation
        self.waited = waited


class BackupIntegrityError(PKIOperationError):
    """Backup is missing its manifest or a checksum does not match."""
