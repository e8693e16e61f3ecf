"""Installed editor extension lookup."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from spacelink.constants import Editor
from spacelink.core.errors import ProbeFailed

logger = logging.getLogger(__name__)

EXTENSION_DIRS = {
    Editor.CURSOR: Path("~/.cursor/extensions"),
    Editor.CODE: Path("~/.vscode/extensions"),
}

VERSION_SUFFIX = re.compile(r"-\d+(\.\d+)*([-.+][\w.-]+)?$")


class EditorExtensionDirectory:
    """Extension registry backed by the editor's extensions directory.

    Installed extensions live in folders named ``<publisher>.<name>-<version>``.

    Parameters
    ----------
    directories : list[Path] | None
        Directories to scan; by default the Cursor and VS Code ones
    """

    def __init__(self, directories: list[Path] | None = None) -> None:
        if directories is None:
            directories = list(EXTENSION_DIRS.values())
        self.directories = [Path(d).expanduser() for d in directories]

    @classmethod
    def for_editor(cls, editor: Editor | str, override: str | None = None) -> EditorExtensionDirectory:
        if override:
            return cls([Path(override)])
        editor = Editor(editor)
        others = [d for e, d in EXTENSION_DIRS.items() if e is not editor]
        return cls([EXTENSION_DIRS[editor], *others])

    def installed_ids(self) -> set[str]:
        """Return lower-cased ids of every installed extension.

        Raises
        ------
        ProbeFailed
            If none of the directories can be listed
        """
        ids: set[str] = set()
        readable = False

        for directory in self.directories:
            if not directory.is_dir():
                continue
            try:
                entries = list(directory.iterdir())
            except OSError as e:
                logger.debug("Cannot list %s: %s", directory, e)
                continue
            readable = True
            for entry in entries:
                if entry.is_dir():
                    ids.add(VERSION_SUFFIX.sub("", entry.name).lower())

        if not readable:
            searched = ", ".join(str(d) for d in self.directories)
            raise ProbeFailed(f"No readable extensions directory (searched {searched})")

        return ids

    def is_installed(self, extension_id: str) -> bool:
        return extension_id.lower() in self.installed_ids()
