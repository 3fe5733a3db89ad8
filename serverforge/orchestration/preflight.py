"""Orchestration layer — Pre-flight checks.

Runs before any module mutates the host:
  - privilege: modules with ``REQUIRES_ROOT`` need an effective uid of 0
  - external tools: every binary in ``REQUIRED_BINARIES`` must be on PATH

Both failures are reported directly to the operator; nothing has executed,
so no rollback is needed.
"""

from __future__ import annotations

import os
import shutil
from typing import Callable, Iterable

from serverforge.exceptions import MissingDependencyError, PermissionDeniedError
from serverforge.logging import get_logger
from serverforge.modules.descriptor import ModuleDescriptor

log = get_logger(__name__)


class PreflightChecker:
    """Validates host prerequisites for a set of module descriptors.

    ``euid`` and ``which`` are injectable so the checks can be exercised
    without root and without touching PATH.
    """

    def __init__(
        self,
        euid: Callable[[], int] | None = None,
        which: Callable[[str], str | None] | None = None,
    ) -> None:
        self._euid = euid or os.geteuid
        self._which = which or shutil.which

    def check(self, descriptors: Iterable[ModuleDescriptor], check_privileges: bool = True) -> None:
        """Raise on the first module whose prerequisites are not met.

        Raises:
            PermissionDeniedError: root required but not running as root.
            MissingDependencyError: one or more required binaries are absent.
        """
        is_root = self._euid() == 0
        for descriptor in descriptors:
            if check_privileges and descriptor.requires_root and not is_root:
                raise PermissionDeniedError(
                    descriptor.name, "must run as root (try sudo)"
                )
            missing = sorted(b for b in descriptor.required_binaries if self._which(b) is None)
            if missing:
                raise MissingDependencyError(descriptor.name, missing)
            log.debug("preflight_ok", module=descriptor.name)
