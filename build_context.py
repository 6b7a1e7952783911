"""Packaging of the image source tree into a Docker build context."""

import logging
import os
import stat
import tarfile
import tempfile
from pathlib import Path
from typing import List

from watch_errors import SetupError

logger = logging.getLogger("buildwatch.context")

DEFAULT_CONTEXT_DIR = "./csgo-container"


def _context_files(root: Path) -> List[Path]:
    """Regular files under *root*, sorted for a stable archive layout."""
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            # lstat so symlinks are seen as links, not their targets
            if stat.S_ISREG(path.lstat().st_mode):
                files.append(path)
    return files


def create_build_context(source_dir: str = DEFAULT_CONTEXT_DIR) -> Path:
    """Write *source_dir* into a tar file in the temp dir and return its path.

    Only regular files are archived, named relative to the tree root and
    made executable so helper scripts can run inside the images.
    Symlinks and directory entries are left out.
    """
    root = Path(source_dir).resolve()
    if not root.is_dir():
        raise SetupError(f"build context directory {root} does not exist")

    fd, name = tempfile.mkstemp(prefix="csgo-update-watcher-", suffix=".tar")
    os.close(fd)
    logger.debug(f"Created build context archive {name}")

    try:
        with tarfile.open(name, "w") as tar:
            for path in _context_files(root):
                info = tarfile.TarInfo(path.relative_to(root).as_posix())
                info.size = path.stat().st_size
                info.mode = 0o777
                with open(path, "rb") as f:
                    tar.addfile(info, f)
    except (OSError, tarfile.TarError) as e:
        raise SetupError(f"failed to write build context archive: {e}") from e

    return Path(name)


class BuildContext:
    """A build context archive packaged once and reopened for every build."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def package(cls, source_dir: str = DEFAULT_CONTEXT_DIR) -> "BuildContext":
        return cls(create_build_context(source_dir))

    def open(self):
        """Open the archive for reading; the caller closes it."""
        return open(self.path, "rb")

    def remove(self) -> None:
        """Delete the archive.  Failures are logged, not raised."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove build context {self.path}: {e}")
