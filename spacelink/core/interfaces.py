"""Protocols for collaborators injected into the core components."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from spacelink.services.process import CommandResult


class ExtensionRegistry(Protocol):
    """Answers whether an editor extension is installed."""

    def is_installed(self, extension_id: str) -> bool:
        """Return True if the extension is installed.

        Raises
        ------
        Exception
            Any failure to consult the registry
        """
        ...


class CommandRunner(Protocol):
    """The subset of ProcessRunner the probes depend on."""

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        input_text: str | None = None,
    ) -> CommandResult: ...

    def is_available(self, command: str, version_flag: str = "--version") -> bool: ...

    def resolve(self, name: str) -> str: ...
