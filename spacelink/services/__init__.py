"""Local processes, the remote channel and the local server."""

from __future__ import annotations

from spacelink.services.extensions import EditorExtensionDirectory
from spacelink.services.installer import PluginInstaller
from spacelink.services.process import CommandResult, ProcessRunner
from spacelink.services.server import LocalServerProbe, ServerInfo
from spacelink.services.ssh import RemoteChannel, RemoteInstallState

__all__ = [
    "CommandResult",
    "ProcessRunner",
    "RemoteChannel",
    "RemoteInstallState",
    "LocalServerProbe",
    "ServerInfo",
    "PluginInstaller",
    "EditorExtensionDirectory",
]
