"""
Configuration file generation for the target system.

This module provides common utilities for writing boot-time artifacts into
the mounted target hierarchy.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from stratum.utils.command import CommandRunner, SimulationMode

logger = logging.getLogger('stratum')


def create_directory(
    path: Path, 
    cmd_runner: CommandRunner, 
    description: Optional[str] = None
) -> None:
    """
    Create a directory if it doesn't exist or log that it would be created in simulation mode.
    
    Args:
        path: Directory path to create
        cmd_runner: CommandRunner instance for executing commands
        description: Optional description of the directory for logging
    """
    desc = f"{description} " if description else ""
    
    if cmd_runner.simulation_mode == SimulationMode.SIMULATE:
        logger.info(f"Would create {desc}directory: {path}")
    else:
        path.mkdir(exist_ok=True, parents=True)
        logger.debug(f"Created {desc}directory: {path}")


def write_target_file(
    path: Path,
    content: str,
    cmd_runner: CommandRunner,
    mode: int = 0o644,
    append: bool = False,
    sensitive: bool = False
) -> None:
    """
    Write a file inside the target hierarchy, creating its parent directory.

    In simulation mode the content is logged instead, unless the file is
    marked sensitive.

    Args:
        path: Absolute host path of the file
        content: File content
        cmd_runner: CommandRunner instance for executing commands
        mode: Permission bits applied to the file
        append: Append instead of replacing
        sensitive: Never log the content
    """
    create_directory(path.parent, cmd_runner)

    if cmd_runner.simulation_mode == SimulationMode.SIMULATE:
        action = "append to" if append else "write"
        if sensitive:
            logger.info(f"Would {action} {path} ({len(content.splitlines())} lines, mode {mode:o})")
        else:
            logger.info(f"Would {action} {path}:")
            for line in content.splitlines():
                logger.info(f"  {line}")
        return

    # Create with restricted permissions before any content lands in the file
    flags = os.O_WRONLY | os.O_CREAT | (os.O_APPEND if append else os.O_TRUNC)
    fd = os.open(str(path), flags, mode)
    with os.fdopen(fd, "a" if append else "w", encoding="utf-8") as handle:
        handle.write(content)
    os.chmod(str(path), mode)
    logger.debug(f"Wrote {path}")


def create_etc_directory(target_path: Path, cmd_runner: CommandRunner) -> Path:
    """
    Create the /etc directory in the target if it doesn't exist.
    
    Args:
        target_path: Path to the target directory
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        Path of the target's /etc
    """
    etc_path = target_path / "etc"
    create_directory(etc_path, cmd_runner, "etc")
    return etc_path
