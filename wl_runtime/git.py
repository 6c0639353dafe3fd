"""
Source checkout for git-sourced workloads.
"""

import asyncio
import logging
from pathlib import Path

from wl_common.errors import RepositoryCloneError

logger = logging.getLogger(__name__)


async def clone_repository(url: str, dest: Path, git_bin: str = "git") -> None:
    """
    Shallow-clone a repository into ``dest``.

    Raises:
        RepositoryCloneError: If git is missing or the clone fails
    """
    logger.info(f"Cloning {url} into {dest}")

    try:
        process = await asyncio.create_subprocess_exec(
            git_bin,
            "clone",
            "--depth",
            "1",
            url,
            str(dest),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RepositoryCloneError(f"Failed to clone repository: {e}") from e

    _, stderr = await process.communicate()

    if process.returncode != 0:
        raise RepositoryCloneError(
            f"Failed to clone repository: {stderr.decode().strip()}"
        )
