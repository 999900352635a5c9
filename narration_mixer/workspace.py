"""Per-request temporary workspace."""

import logging
import os
import re
import shutil
import tempfile
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

SUBDIRS = ["assets", "sfx", "render"]


def slug(text: str) -> str:
    """Filesystem-safe lowercase slug.

    "Whoosh 01!" -> "whoosh_01"
    """
    return re.sub(r"[^a-zA-Z0-9]+", "_", text).strip("_").lower() or "asset"


def extension_for(ref: str, default: str = ".wav") -> str:
    """File extension of an asset reference, ignoring query strings."""
    path = urlparse(ref).path if "://" in ref else ref
    ext = os.path.splitext(path)[1].lower()
    return ext if ext and len(ext) <= 5 else default


class MixWorkspace:
    """A temporary directory owned by exactly one mix request.

    Use as a context manager; the directory tree is removed on exit whether
    the block succeeded or raised. ``release()`` is idempotent.
    """

    def __init__(self, prefix: str = "narration-mix-", base_dir: str | None = None):
        self.prefix = prefix
        self.base_dir = base_dir
        self.path: str | None = None

    def __enter__(self) -> "MixWorkspace":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False

    def acquire(self) -> "MixWorkspace":
        self.path = tempfile.mkdtemp(prefix=self.prefix, dir=self.base_dir)
        for subdir in SUBDIRS:
            os.makedirs(os.path.join(self.path, subdir), exist_ok=True)
        logger.debug("Workspace acquired: %s", self.path)
        return self

    def file(self, subdir: str, name: str) -> str:
        """Path for a file inside the workspace (not created)."""
        if self.path is None:
            raise RuntimeError("Workspace not acquired")
        return os.path.join(self.path, subdir, name)

    def contains(self, path: str) -> bool:
        if self.path is None:
            return False
        root = os.path.realpath(self.path)
        return os.path.commonpath([root, os.path.realpath(path)]) == root

    def adopt(self, path: str, subdir: str = "assets") -> str:
        """Move a file produced for this request into the workspace.

        Returns the new path. Files already inside stay where they are.
        """
        if self.contains(path):
            return path
        target = self.file(subdir, os.path.basename(path))
        shutil.move(path, target)
        logger.debug("Adopted %s into workspace as %s", path, target)
        return target

    @property
    def exists(self) -> bool:
        return self.path is not None and os.path.isdir(self.path)

    def release(self) -> None:
        if not self.exists:
            return
        try:
            shutil.rmtree(self.path)
        except OSError as e:
            logger.warning("Could not remove workspace %s: %s", self.path, e)
            return
        logger.debug("Workspace released: %s", self.path)
