"""Stable workspace identity.

The same workspace path and ``origin`` remote always hash to the same
``projectKey``, whichever IDE process computes it.
"""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("codemeter.projects")

_SECTION_RE = re.compile(r'^\[remote\s+"([^"]+)"\]$')
_URL_RE = re.compile(r"^url\s*=\s*(.+)$")


@dataclass(frozen=True)
class ProjectIdentity:
    projectKey: str
    displayName: str
    workspacePath: str
    gitRemote: Optional[str] = None


def read_git_remote(workspace_path: str) -> Optional[str]:
    """URL of the ``origin`` remote from ``.git/config``, if any."""
    config_path = Path(workspace_path) / ".git" / "config"
    try:
        content = config_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None

    in_origin = False
    for line in content.splitlines():
        stripped = line.strip()
        section = _SECTION_RE.match(stripped)
        if section:
            in_origin = section.group(1) == "origin"
            continue
        if stripped.startswith("["):
            in_origin = False
            continue
        if not in_origin:
            continue
        url = _URL_RE.match(stripped)
        if url:
            return url.group(1).strip()
    return None


def project_key_for(workspace_path: str, git_remote: Optional[str]) -> str:
    digest = hashlib.sha256(f"{workspace_path}::{git_remote or ''}".encode("utf-8")).hexdigest()
    return digest[:32]


def compute_project_identity(workspace_path: str) -> ProjectIdentity:
    remote = read_git_remote(workspace_path)
    return ProjectIdentity(
        projectKey=project_key_for(workspace_path, remote),
        displayName=Path(workspace_path).name or workspace_path,
        workspacePath=workspace_path,
        gitRemote=remote,
    )
