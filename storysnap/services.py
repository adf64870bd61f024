from __future__ import annotations

import logging
import subprocess
from typing import List, Sequence

from .errors import SnapshotError

logger = logging.getLogger(__name__)


class ServiceError(SnapshotError):
    pass


class SystemdServiceManager:
    """Thin wrapper over systemctl for the node's units."""

    def __init__(self, use_sudo: bool = True, systemctl: str = "systemctl") -> None:
        self._prefix: List[str] = (["sudo"] if use_sudo else []) + [systemctl]

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [*self._prefix, *args],
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            raise ServiceError(f"failed to run systemctl {' '.join(args)}: {exc}") from exc

    def _checked(self, *args: str) -> None:
        completed = self._run(*args)
        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            raise ServiceError(f"systemctl {' '.join(args)} failed: {stderr or completed.returncode}")

    def stop(self, names: Sequence[str]) -> None:
        logger.info("Stopping services: %s", ", ".join(names))
        self._checked("stop", *names)

    def restart(self, names: Sequence[str]) -> None:
        logger.info("Restarting services: %s", ", ".join(names))
        self._checked("restart", *names)

    def status(self, name: str) -> bool:
        return self._run("is-active", "--quiet", name).returncode == 0

    def exists(self, name: str) -> bool:
        completed = self._run("list-unit-files", f"{name}.service")
        if completed.returncode != 0:
            return False
        return f"{name}.service" in (completed.stdout or "")
