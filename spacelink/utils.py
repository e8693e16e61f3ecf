"""Utility functions for spacelink."""

import logging
import os
import stat
import sys
import time
from pathlib import Path
from typing import Any

from spacelink.constants import TOOLKIT_STORAGE_SUBPATH, Editor

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

BACKUP_INFIX = ".backup."

BACKUP_MODE = 0o600

ERROR_KEYWORDS = ("timeout", "refused", "error", "Error", "failed", "Connection")


def log_and_print_error(message: str, *args: Any) -> None:
    """Log error message and print to stderr.

    Parameters
    ----------
    message : str
        Error message with optional format placeholders
    *args : Any
        Format arguments for message
    """
    logging.error(message, *args)
    formatted_msg = message % args if args else message
    print(f"Error: {formatted_msg}", file=sys.stderr)


def editor_user_dir(editor: Editor | str = Editor.CURSOR) -> Path:
    """Return the editor's per-user data directory for this platform.

    Parameters
    ----------
    editor : Editor | str
        Editor whose directory to locate

    Returns
    -------
    Path
        ``%APPDATA%\\Cursor`` on Windows, ``~/Library/Application Support/Cursor``
        on macOS and ``~/.config/Cursor`` elsewhere (``Code`` for VS Code)
    """
    name = Editor(editor).dirname

    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(appdata) / name
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / name
    return Path.home() / ".config" / name


def toolkit_storage_dir(editor: Editor | str = Editor.CURSOR) -> Path:
    """Return the AWS Toolkit global storage directory for an editor."""
    return editor_user_dir(editor).joinpath(*TOOLKIT_STORAGE_SUBPATH)


def _lock(lock_file: Any) -> None:
    if sys.platform == "win32":
        msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
    else:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)


def _unlock(lock_file: Any) -> None:
    if sys.platform == "win32":
        msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def atomic_file_write(path: Path, content: str) -> None:
    """Write file atomically using temp file and rename with file locking.

    Uses exclusive file locking to prevent concurrent access during write.
    Writes to temporary file and renames to target atomically, so readers
    such as the ssh client never observe a half-written file.

    Parameters
    ----------
    path : Path
        Target file path
    content : str
        File content to write

    Raises
    ------
    Exception
        Propagates any exception from write operation after cleanup
    """
    path = Path(path)
    temp_path = path.with_name(path.name + ".tmp")
    lock_path = path.with_name(path.name + ".lock")

    try:
        with open(lock_path, "w") as lock_file:
            _lock(lock_file)
            try:
                with open(temp_path, "w", encoding="utf-8", newline="") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                if path.exists():
                    os.chmod(temp_path, stat.S_IMODE(path.stat().st_mode))
                os.replace(temp_path, path)
            except Exception:
                if temp_path.exists():
                    temp_path.unlink()
                raise
            finally:
                _unlock(lock_file)
    finally:
        try:
            lock_path.unlink()
        except OSError:
            pass


def write_backup(path: Path, content: str) -> Path:
    """Write a durable timestamped backup next to ``path``.

    The backup is created owner-only since it may hold host aliases and
    account identifiers from the SSH config.

    Parameters
    ----------
    path : Path
        File being backed up
    content : str
        Content to preserve, normally the file's text before patching

    Returns
    -------
    Path
        Location of the backup, ``<path>.backup.<epoch-ms>``

    Raises
    ------
    OSError
        If the backup cannot be written; callers must not modify ``path`` then
    """
    path = Path(path)
    stamp = int(time.time() * 1000)
    backup = path.with_name(f"{path.name}{BACKUP_INFIX}{stamp}")
    while backup.exists():
        stamp += 1
        backup = path.with_name(f"{path.name}{BACKUP_INFIX}{stamp}")

    fd = os.open(backup, os.O_WRONLY | os.O_CREAT | os.O_EXCL, BACKUP_MODE)
    with open(fd, "w", encoding="utf-8", newline="") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())

    logger.debug("Wrote backup %s", backup)
    return backup


def list_backups(path: Path) -> list[Path]:
    """List backups of ``path``, newest first.

    Parameters
    ----------
    path : Path
        File whose backups to list

    Returns
    -------
    list[Path]
        Backup files sorted by their timestamp suffix, newest first
    """
    path = Path(path)
    if not path.parent.is_dir():
        return []

    prefix = f"{path.name}{BACKUP_INFIX}"
    stamped = []
    for candidate in path.parent.iterdir():
        if not candidate.name.startswith(prefix):
            continue
        suffix = candidate.name[len(prefix):]
        if suffix.isdigit():
            stamped.append((int(suffix), candidate))

    return [candidate for _, candidate in sorted(stamped, reverse=True)]


def summarize_error_output(output: str, fallback: str = "Unknown error") -> str:
    """Reduce noisy ssh output to a short error summary.

    Keeps lines that look like errors, drops ssh debug chatter and public
    key negotiation noise, then joins the last three.

    Parameters
    ----------
    output : str
        Combined stderr/stdout of a failed command
    fallback : str
        Message used when no output is available

    Returns
    -------
    str
        Summary of at most 200 characters plus an ellipsis
    """
    stripped = output.strip()
    if not stripped:
        return fallback

    meaningful = []
    for line in stripped.splitlines():
        line = line.strip()
        if not line or "debug1:" in line or "Permission denied" in line:
            continue
        if any(keyword in line for keyword in ERROR_KEYWORDS) or len(line) > 30:
            meaningful.append(line)

    if not meaningful:
        if len(stripped) > 150:
            return f"{fallback} - {stripped[:150]}..."
        return f"{fallback} - {stripped}"

    summary = "; ".join(meaningful[-3:])
    if len(summary) > 200:
        summary = summary[:200] + "..."
    return summary
