"""
Profile discovery and loading.

Profiles live in a YAML mapping keyed by profile name.  The ``default``
profile is the base every other profile is layered on top of.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .. import ClientConfig

LOG = logging.getLogger(__name__)

ENV_PROFILES_VAR = "DREAMLINK_PROFILES"
ENV_BASE_URL_VAR = "DREAMLINK_BASE_URL"
CONFIG_DIR = Path(__file__).resolve().parent.parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

_NESTED_KEYS = ("pipeline", "parameters")


def profiles_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    override = env.get(ENV_PROFILES_VAR)
    if override:
        return Path(override).expanduser()
    return PROFILES_PATH


def read_profiles(path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    target = path or profiles_path()
    try:
        with target.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Profiles file %s not found; using built-in defaults.", target)
        return {}
    if not isinstance(profiles, dict):
        raise ValueError(f"{target} must contain a mapping of profiles")
    return profiles


def _layer(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if key in _NESTED_KEYS and isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            nested = dict(merged[key])
            nested.update(value)
            merged[key] = nested
        else:
            merged[key] = value
    return merged


def load_config(
    profile: str = "default",
    *,
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ClientConfig:
    """
    Build a :class:`ClientConfig` for ``profile``.

    ``DREAMLINK_BASE_URL`` overrides whatever endpoint the profile declares.
    """

    env = os.environ if environ is None else environ
    profiles = read_profiles(path or profiles_path(env))
    if profile != "default" and profile not in profiles:
        raise ValueError(f"Unknown profile '{profile}'")

    data = _layer({}, profiles.get("default") or {})
    if profile != "default":
        data = _layer(data, profiles.get(profile) or {})

    base_url = env.get(ENV_BASE_URL_VAR)
    if base_url:
        data["base_url"] = base_url

    config = ClientConfig.from_mapping(data, profile=profile)
    LOG.debug("Loaded profile '%s' targeting %s", profile, config.base_url)
    return config
