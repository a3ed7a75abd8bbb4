"""
Profile discovery for relay and peer settings.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

ENV_PROFILES_VAR = "SENDRECV_PROFILES"
DEFAULT_PROFILES_PATH = Path(__file__).resolve().parent.parent / "configs" / "profiles.yaml"

LOG = logging.getLogger(__name__)


def profiles_path() -> Path:
    override = os.environ.get(ENV_PROFILES_VAR)
    if override:
        return Path(override).expanduser()
    return DEFAULT_PROFILES_PATH


@lru_cache(maxsize=4)
def _read_profiles(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Profiles file %s not found; using built-in defaults.", path)
        return {}
    if not isinstance(data, dict):
        LOG.warning("Profiles file %s is not a mapping; ignoring it.", path)
        return {}
    return data


def load_profiles(path: Optional[Path] = None) -> Dict[str, Any]:
    return dict(_read_profiles(path or profiles_path()))


def load_section(profile: str, section: str, path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Return ``profiles[profile][section]`` layered over the ``default`` profile.

    Unknown profiles fall back to ``default`` with a warning.
    """

    profiles = load_profiles(path)
    base = profiles.get("default") or {}
    if profile != "default" and profile not in profiles:
        LOG.warning("Unknown profile '%s'; falling back to 'default'.", profile)
    selected = profiles.get(profile) or {}

    merged: Dict[str, Any] = dict(base.get(section) or {})
    merged.update(selected.get(section) or {})
    return merged
