"""Centralized prompt catalog: single source of truth for all instructions.

Loads prompts from ``templates.yaml`` (next to this module) and provides
accessors for stage prompts, shared fragments and retry hints.

Supports a user-override file at ``~/.e2e_robot/prompt_overrides.yaml``
that is merged on top of the built-in defaults.

Templates use ``$name`` placeholders (:class:`string.Template`) because
stage prompts embed JSON and TypeScript, where ``{}`` is common.
"""

from __future__ import annotations

import logging
from pathlib import Path
from string import Template
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"
_USER_OVERRIDE = Path.home() / ".e2e_robot" / "prompt_overrides.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class PromptCatalog:
    """Loads and serves prompts from the YAML catalog.

    Usage::

        catalog = PromptCatalog()
        text = catalog.render_stage("generate_scenarios", analysis=..., artifact_path=...)
        hint = catalog.hint("side_effect_not_confirmed", artifact_path=...)
    """

    def __init__(self, extra_path: Path | None = None, *, user_override: Path | None = None) -> None:
        self._extra_path = extra_path
        self._user_override = _USER_OVERRIDE if user_override is None else user_override
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        """Load built-in templates, then merge user overrides."""
        self._data = _load_yaml(_BUILTIN_YAML)

        if self._user_override.exists():
            overrides = _load_yaml(self._user_override)
            if overrides:
                self._data = _deep_merge(self._data, overrides)
                logger.info("Loaded prompt overrides from %s", self._user_override)

        if self._extra_path and self._extra_path.exists():
            extra = _load_yaml(self._extra_path)
            if extra:
                self._data = _deep_merge(self._data, extra)
                logger.info("Loaded extra prompts from %s", self._extra_path)

    def reload(self) -> None:
        """Re-read all YAML files from disk."""
        self._load()

    # ── Stage prompts ────────────────────────────────────────────

    def stage(self, key: str) -> str:
        """Return the raw prompt template for a stage."""
        entry = self._data.get("stages", {}).get(key, {})
        return (entry.get("prompt") or "").strip()

    def stage_meta(self, key: str) -> dict[str, str]:
        """Return metadata (name, description) for a stage."""
        entry = self._data.get("stages", {}).get(key, {})
        return {
            "name": entry.get("name", key),
            "description": entry.get("description", ""),
        }

    def list_stages(self) -> list[str]:
        """Return all defined stage prompt keys."""
        return list(self._data.get("stages", {}).keys())

    def render_stage(self, key: str, **values: Any) -> str:
        template = self.stage(key)
        if not template:
            raise KeyError(f"No prompt defined for stage '{key}'")
        return _render(template, values)

    # ── Fragments and hints ──────────────────────────────────────

    def fragment(self, key: str, **values: Any) -> str:
        """Return a shared text fragment (write rules, report schema, ...)."""
        text = str(self._data.get("fragments", {}).get(key) or "").strip()
        return _render(text, values) if text else ""

    def hint(self, key: str, **values: Any) -> str:
        """Return a retry hint by key; empty when undefined."""
        text = str(self._data.get("hints", {}).get(key) or "").strip()
        return _render(text, values) if text else ""

    # ── Raw access ───────────────────────────────────────────────

    @property
    def raw(self) -> dict[str, Any]:
        """Direct access to the full parsed data."""
        return self._data


def _render(template: str, values: dict[str, Any]) -> str:
    return Template(template).safe_substitute({k: str(v) for k, v in values.items()})
