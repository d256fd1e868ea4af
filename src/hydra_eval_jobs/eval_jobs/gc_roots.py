"""Garbage collector root registration for evaluated jobs."""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


class GcRootRegistrar:
    """Keep derivations alive by symlinking them from a roots directory.

    The roots directory is expected to live under the store's ``gcroots``
    tree, where every symlink is a permanent root.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def register(self, drv_path: str) -> Path | None:
        """Create ``<directory>/<basename>``; return None when it already exists."""

        root = self.directory / Path(drv_path).name
        if root.exists() or root.is_symlink():
            return None

        self.directory.mkdir(parents=True, exist_ok=True)
        staging = root.with_name(f".{root.name}.{os.getpid()}.tmp")
        try:
            staging.unlink(missing_ok=True)
            staging.symlink_to(drv_path)
            # Another worker may create the same root concurrently.
            os.replace(staging, root)
        finally:
            staging.unlink(missing_ok=True)
        logger.debug("Registered GC root %s -> %s", root, drv_path)
        return root
