"""
Filesystem utilities for provisioning workspaces.
"""
import os
import shutil
import tempfile
from pathlib import Path


def workspace_root(app_name: str) -> Path:
    """Parent directory of every deployment workspace: <tmp>/<app>-deploy."""
    return Path(tempfile.gettempdir()) / f"{app_name}-deploy"


def create_exclusive_dir(path: Path) -> Path:
    """
    Create a directory that must not already exist.

    Args:
        path: Directory to create (parents are created as needed)

    Returns:
        The created path

    Raises:
        FileExistsError: If the directory already exists
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.mkdir(mode=0o700)
    return path


def write_private_file(path: Path, content: str) -> None:
    """Write text readable only by the current user (files may hold credentials)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)


def read_text_if_exists(path: Path):
    """File contents as UTF-8, or None when the file is absent."""
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def remove_tree(path: Path) -> None:
    """Remove a directory and everything under it. Missing paths are fine."""
    if path.exists():
        shutil.rmtree(path)
