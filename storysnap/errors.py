from __future__ import annotations

from typing import Optional


class SnapshotError(Exception):
    """Base class for every error raised by storysnap."""


class NetworkError(SnapshotError):
    """Endpoint unreachable, timed out, or answered with a non-2xx status."""


class SchemaError(NetworkError):
    """Endpoint answered, but the payload is not the JSON we expect."""


class IntegrityError(SnapshotError):
    """Download or candidate set cannot be trusted."""


class FilesystemError(SnapshotError):
    pass


class DependencyError(SnapshotError):
    pass


class LockError(SnapshotError):
    pass


class PipelineError(SnapshotError):
    """
    Fatal apply-pipeline failure.

    The message always names the failed step and, once services were
    stopped, tells the operator where the validator state backup lives.
    """

    def __init__(
        self,
        step: str,
        cause: BaseException,
        *,
        services_stopped: bool = False,
        backup_path: Optional[str] = None,
        restored: bool = False,
        services_partial: bool = False,
    ) -> None:
        self.step = step
        self.cause = cause
        self.services_stopped = services_stopped
        self.backup_path = backup_path
        self.restored = restored
        self.services_partial = services_partial
        super().__init__(self._render())

    def _render(self) -> str:
        cause = str(self.cause) or type(self.cause).__name__
        parts = [f"Snapshot pipeline failed at step '{self.step}': {cause}"]
        if self.services_stopped:
            parts.append("Node services are STOPPED and were not restarted.")
        elif self.services_partial:
            parts.append("Node services may be partially stopped; check them before retrying.")
        if self.backup_path:
            if self.restored:
                parts.append(
                    f"Validator state was restored; a backup copy remains at {self.backup_path}."
                )
            else:
                parts.append(
                    f"Validator state backup resides at {self.backup_path}; "
                    "restore it manually before starting services."
                )
        return " ".join(parts)
