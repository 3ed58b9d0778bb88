"""Tar helpers shared by the backup and restore workflows."""
from __future__ import annotations

import shutil
import subprocess
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when tar cannot create or extract an archive."""


def _tar_binary() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to handle archives.")
    return tar_bin


def create_archive(source_dir: Path, archive_path: Path) -> None:
    """Write a gzip-compressed tarball of *source_dir* to *archive_path*.

    The archive holds a single top-level entry named after *source_dir*.
    """
    cmd = [
        _tar_binary(),
        "-czf",
        str(archive_path),
        "-C",
        str(source_dir.parent),
        source_dir.name,
    ]
    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())


def extract_archive(archive_path: Path, destination: Path, *, expected_root: str) -> Path:
    """Extract *archive_path* into *destination* and return the payload directory."""
    destination.mkdir(parents=True, exist_ok=True)
    cmd = [_tar_binary(), "-xzf", str(archive_path), "-C", str(destination)]
    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar extraction failed").strip()
        raise ArchiveError(f"Failed to extract {archive_path.name}: {message}")

    payload_root = destination / expected_root
    if not payload_root.is_dir():
        candidates = [item for item in destination.iterdir() if item.is_dir()]
        if len(candidates) != 1:
            raise ArchiveError(
                f"Archive {archive_path.name} did not contain a single payload directory."
            )
        payload_root = candidates[0]
    return payload_root


__all__ = ["ArchiveError", "create_archive", "extract_archive"]
