"""
Filesystem operations used by the deployment.

Existence checks read the local filesystem directly. Writes under system
directories go through ``sudo`` via the command runner, so the deployment
itself runs as the regular user and a fake runner can observe every change.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import BinaryIO

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from llamadeploy.branding import console
from llamadeploy.errors import DownloadError, PhaseError
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK = 1024 * 1024
CONNECT_TIMEOUT = 30
READ_TIMEOUT = 300
TAIL_BLOCK = 64 * 1024


def tail_file(f: BinaryIO, count: int) -> list[str]:
    """Last ``count`` lines of a binary file, read backwards in blocks."""
    if count <= 0:
        return []
    pos = f.seek(0, os.SEEK_END)
    data = b""
    while pos > 0 and data.count(b"\n") <= count:
        step = min(TAIL_BLOCK, pos)
        pos -= step
        f.seek(pos)
        data = f.read(step) + data
    return data.decode("utf-8", errors="replace").splitlines()[-count:]


class ArtifactStore:
    """Existence checks, privileged writes and downloads."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def is_dir(self, path: Path) -> bool:
        return Path(path).is_dir()

    def read_text(self, path: Path) -> str | None:
        """Read a file, falling back to ``sudo cat`` for root-only files.

        Returns:
            File contents, or None if the file does not exist or stays unreadable.
        """
        path = Path(path)
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        except PermissionError:
            result = self.runner.run(["cat", str(path)], sudo=True)
            return result.stdout if result.success else None

    def write_text(self, path: Path, content: str, what: str | None = None) -> None:
        """Write a root-owned file in full."""
        self.runner.run(
            ["tee", str(path)],
            sudo=True,
            input=content,
            check=True,
            error_message=f"Failed to write {what or path}",
        )

    def ensure_dirs(self, *paths: Path, owner: str | None = None) -> None:
        if not paths:
            return
        self.runner.run(
            ["mkdir", "-p", *[str(p) for p in paths]],
            sudo=True,
            check=True,
            error_message="Failed to create directories",
        )
        if owner:
            self.runner.run(
                ["chown", "-R", f"{owner}:{owner}", *[str(p) for p in paths]],
                sudo=True,
                check=True,
                error_message="Failed to set directory ownership",
            )

    def install_file(self, source: Path, dest: Path, mode: str = "755") -> None:
        self.runner.run(
            ["install", "-m", mode, str(source), str(dest)],
            sudo=True,
            check=True,
            error_message=f"Failed to install {dest}",
        )

    def symlink(self, target: Path, link: Path) -> None:
        self.runner.run(
            ["ln", "-sf", str(target), str(link)],
            sudo=True,
            check=True,
            error_message=f"Failed to link {link}",
        )

    def remove_tree(self, path: Path) -> None:
        logger.info("Removing %s", path)
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise PhaseError(f"Failed to remove {path}: {e}")

    def append_text(self, path: Path, content: str) -> None:
        """Append to a file owned by the current user (shell profile)."""
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise PhaseError(f"Failed to update {path}: {e}")

    def tail(self, path: Path, count: int) -> list[str] | None:
        """Return the last ``count`` lines of a file without reading all of it.

        Root-only files are handed to ``sudo tail``.

        Returns:
            The lines, or None if the file does not exist or stays unreadable.
        """
        path = Path(path)
        try:
            with open(path, "rb") as f:
                return tail_file(f, count)
        except FileNotFoundError:
            return None
        except PermissionError:
            result = self.runner.run(["tail", "-n", str(max(count, 0)), str(path)], sudo=True)
            return result.lines if result.success else None

    def download(self, url: str, dest: Path) -> Path:
        """Stream ``url`` to ``dest`` with a progress bar.

        The body is written to ``<dest>.part`` and renamed once complete, so an
        interrupted download never leaves a truncated model at ``dest``.

        Raises:
            DownloadError: On any HTTP or filesystem failure.
        """
        dest = Path(dest)
        partial = dest.with_name(dest.name + ".part")
        try:
            with requests.get(url, stream=True, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT)) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length", 0)) or None
                with Progress(
                    TextColumn("[bold blue]{task.description}"),
                    BarColumn(),
                    DownloadColumn(),
                    TransferSpeedColumn(),
                    TimeRemainingColumn(),
                    console=console,
                ) as progress:
                    task = progress.add_task(dest.name, total=total)
                    with open(partial, "wb") as f:
                        for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                            if chunk:
                                f.write(chunk)
                                progress.advance(task, len(chunk))
            partial.replace(dest)
        except (requests.RequestException, OSError) as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"Download of {url} failed: {e}")
        return dest
