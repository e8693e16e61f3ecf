"""Idempotent repairs of the connection script and the SSH config."""

from __future__ import annotations

from spacelink.repair.engine import PatchEngine, PatchResult, PatchRule
from spacelink.repair.script import ScriptRepair
from spacelink.repair.ssh_config import ConfigRepair, prune_known_hosts

__all__ = [
    "PatchEngine",
    "PatchResult",
    "PatchRule",
    "ScriptRepair",
    "ConfigRepair",
    "prune_known_hosts",
]
