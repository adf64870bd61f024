from __future__ import annotations

import fcntl
import filecmp
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Optional, Protocol, Sequence, Tuple

from .config import NodeLayout
from .errors import FilesystemError, IntegrityError, LockError, PipelineError
from .models import PruningMode, SnapshotDescriptor
from .providers import find_provider
from .providers.base import SnapshotProvider

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    MODE_SELECTED = "mode_selected"
    PROVIDER_SELECTED = "provider_selected"
    SERVICES_STOPPED = "services_stopped"
    STATE_BACKED_UP = "state_backed_up"
    ASSETS_DOWNLOADED = "assets_downloaded"
    ASSETS_EXTRACTED = "assets_extracted"
    STATE_RESTORED = "state_restored"
    SERVICES_RESTARTED = "services_restarted"
    DONE = "done"
    FAILED = "failed"


class ServiceManager(Protocol):
    def stop(self, names: Sequence[str]) -> None: ...

    def restart(self, names: Sequence[str]) -> None: ...

    def status(self, name: str) -> bool: ...

    def exists(self, name: str) -> bool: ...


@dataclass
class Session:
    """Everything one snapshot run decides, passed explicitly between steps."""

    layout: NodeLayout
    services: Tuple[str, ...] = ("story", "story-geth")
    mode: Optional[PruningMode] = None
    descriptor: Optional[SnapshotDescriptor] = None
    output_path: Optional[str] = None

    @property
    def export_only(self) -> bool:
        return bool(self.output_path)


class ValidatorStateBackup:
    """Copy of the signing-state file that outlives every destructive step."""

    def __init__(self, source: str, backup: str) -> None:
        self.source = source
        self.backup = backup

    def create(self) -> str:
        try:
            shutil.copy2(self.source, self.backup)
            with open(self.backup, "rb") as f:
                os.fsync(f.fileno())
            identical = filecmp.cmp(self.source, self.backup, shallow=False)
        except OSError as exc:
            raise FilesystemError(f"Failed to back up {self.source}: {exc}") from exc
        if not identical:
            raise FilesystemError(f"Backup {self.backup} does not match {self.source}")
        logger.info("Backed up validator state to %s", self.backup)
        return self.backup

    def restore(self, *, keep_backup: bool = False) -> None:
        """Atomically put the backup back in place, replacing anything extracted there."""
        parent = os.path.dirname(self.source)
        tmp_path = None
        try:
            os.makedirs(parent, exist_ok=True)
            with open(self.backup, "rb") as src, tempfile.NamedTemporaryFile(
                mode="wb", dir=parent, delete=False, suffix=".tmp"
            ) as tmp:
                tmp_path = tmp.name
                shutil.copyfileobj(src, tmp)
                tmp.flush()
                os.fsync(tmp.fileno())
            shutil.copymode(self.backup, tmp_path)
            os.replace(tmp_path, self.source)
            tmp_path = None
            if not filecmp.cmp(self.source, self.backup, shallow=False):
                raise FilesystemError(f"Restored {self.source} does not match {self.backup}")
            if not keep_backup:
                os.remove(self.backup)
        except OSError as exc:
            raise FilesystemError(f"Failed to restore {self.source} from {self.backup}: {exc}") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
        logger.info("Restored validator state to %s", self.source)


@contextmanager
def node_lock(path: str) -> Iterator[None]:
    """Advisory exclusive lock on the node's state directory."""
    try:
        handle = open(path, "a+")
    except OSError as exc:
        raise LockError(f"Cannot open lock file {path}: {exc}") from exc
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise LockError(
                f"Another snapshot run holds {path}; refusing to touch the node concurrently"
            ) from exc
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


class ApplyPipeline:
    """
    Drives one snapshot run.

    Stopping services, backing up and restoring validator state, and
    restarting services are identical for every provider; only wiping
    targets and installing assets are delegated to the provider.
    """

    def __init__(
        self,
        providers: List[SnapshotProvider],
        services: ServiceManager,
        on_transition: Optional[Callable[[PipelineState], None]] = None,
    ) -> None:
        self.providers = providers
        self.services = services
        self.on_transition = on_transition
        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]

    def _enter(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("Pipeline state -> %s", state.value)
        if self.on_transition is not None:
            self.on_transition(state)

    def select_mode(self, session: Session, mode: "str | PruningMode") -> PruningMode:
        session.mode = PruningMode.parse(mode)
        self._enter(PipelineState.MODE_SELECTED)
        return session.mode

    def select_provider(self, session: Session, descriptor: SnapshotDescriptor) -> None:
        if session.mode is None:
            raise IntegrityError("pruning mode must be selected before the provider")
        if descriptor.mode != session.mode:
            raise IntegrityError(
                f"{descriptor.provider} descriptor is for {descriptor.mode}, not {session.mode}"
            )
        if not descriptor.available:
            raise IntegrityError(
                f"{descriptor.provider} has no usable {descriptor.mode} snapshot"
            )
        session.descriptor = descriptor
        self._enter(PipelineState.PROVIDER_SELECTED)

    def run(self, session: Session) -> None:
        if session.descriptor is None or not session.descriptor.available:
            self._enter(PipelineState.FAILED)
            raise IntegrityError("no snapshot candidate selected; cannot proceed")
        try:
            provider = find_provider(self.providers, session.descriptor.provider)
        except ValueError as exc:
            self._enter(PipelineState.FAILED)
            raise IntegrityError(str(exc)) from exc

        if session.export_only:
            self._export(session, provider)
        else:
            self._apply(session, provider)
        self._enter(PipelineState.DONE)

    def _export(self, session: Session, provider: SnapshotProvider) -> None:
        output_dir = session.output_path
        logger.info(
            "Downloading %s %s snapshot to %s", provider.name, session.descriptor.mode, output_dir
        )
        try:
            os.makedirs(output_dir, exist_ok=True)
            provider.export(session.descriptor, output_dir)
        except Exception as exc:
            self._enter(PipelineState.FAILED)
            raise PipelineError("download", exc) from exc
        self._enter(PipelineState.ASSETS_DOWNLOADED)
        # Exported archives are left packed.
        self._enter(PipelineState.ASSETS_EXTRACTED)

    def _preflight(self, layout: NodeLayout) -> None:
        if not os.path.isdir(layout.consensus_dir):
            raise FilesystemError(f"Story path not found: {layout.consensus_dir}")
        if not os.path.isfile(layout.validator_state):
            raise FilesystemError(f"Validator state not found: {layout.validator_state}")

    def _apply(self, session: Session, provider: SnapshotProvider) -> None:
        layout = session.layout
        try:
            self._preflight(layout)
        except FilesystemError as exc:
            self._enter(PipelineState.FAILED)
            raise PipelineError("preflight", exc) from exc

        with node_lock(layout.lock_path):
            self._apply_locked(session, provider)

    def _apply_locked(self, session: Session, provider: SnapshotProvider) -> None:
        layout = session.layout
        names = list(session.services)

        try:
            self.services.stop(names)
        except Exception as exc:
            self._enter(PipelineState.FAILED)
            raise PipelineError("stop services", exc, services_partial=True) from exc
        self._enter(PipelineState.SERVICES_STOPPED)

        backup = ValidatorStateBackup(layout.validator_state, layout.validator_state_backup)
        try:
            backup.create()
        except FilesystemError as exc:
            self._enter(PipelineState.FAILED)
            raise PipelineError("backup validator state", exc, services_stopped=True) from exc
        self._enter(PipelineState.STATE_BACKED_UP)

        step = "prepare targets"

        def _downloaded() -> None:
            nonlocal step
            if self.state is not PipelineState.ASSETS_DOWNLOADED:
                self._enter(PipelineState.ASSETS_DOWNLOADED)
                step = "extract assets"

        try:
            provider.prepare_targets(layout)
            step = "download and extract"
            provider.install(session.descriptor, layout, on_downloaded=_downloaded)
        except BaseException as exc:
            self._restore_after_failure(backup, step, exc)
            raise
        if self.state is not PipelineState.ASSETS_DOWNLOADED:
            self._enter(PipelineState.ASSETS_DOWNLOADED)
        self._enter(PipelineState.ASSETS_EXTRACTED)

        try:
            backup.restore()
        except FilesystemError as exc:
            self._enter(PipelineState.FAILED)
            raise PipelineError(
                "restore validator state",
                exc,
                services_stopped=True,
                backup_path=backup.backup,
            ) from exc
        self._enter(PipelineState.STATE_RESTORED)

        try:
            self.services.restart(names)
        except Exception as exc:
            self._enter(PipelineState.FAILED)
            raise PipelineError("restart services", exc, services_stopped=True) from exc
        self._enter(PipelineState.SERVICES_RESTARTED)
        logger.info("Snapshot successfully applied from %s", provider.name)

    def _restore_after_failure(
        self, backup: ValidatorStateBackup, step: str, exc: BaseException
    ) -> None:
        """Put validator state back, then halt without restarting services."""
        try:
            backup.restore(keep_backup=True)
        except FilesystemError as restore_exc:
            logger.error("Restoring validator state after failure also failed: %s", restore_exc)
            self._enter(PipelineState.FAILED)
            raise PipelineError(
                step,
                FilesystemError(f"{exc}; restoring validator state also failed: {restore_exc}"),
                services_stopped=True,
                backup_path=backup.backup,
            ) from restore_exc
        self._enter(PipelineState.STATE_RESTORED)
        self._enter(PipelineState.FAILED)
        # KeyboardInterrupt is wrapped as well.
        raise PipelineError(
            step,
            exc,
            services_stopped=True,
            backup_path=backup.backup,
            restored=True,
        ) from exc
