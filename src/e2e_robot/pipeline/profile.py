"""Test profile: what the operator wants tested, saved next to the artifacts.

The profile lives in ``<work_dir>/test-config.json`` so a resumed run keeps
the same target and requirements without repeating CLI flags.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError

from e2e_robot.file_io import atomic_write_text, read_text_lenient

logger = logging.getLogger(__name__)

PROFILE_FILE = "test-config.json"

TEST_TYPE_NAMES: dict[str, str] = {
    "functional": "Functional",
    "ux": "User experience",
    "responsive": "Responsive layout",
    "performance": "Performance",
    "compatibility": "Compatibility",
    "security": "Security",
}


class TestProfile(BaseModel):
    """Operator-supplied test requirements for one target site."""

    __test__ = False

    target_url: str = ""
    site_name: str = ""
    test_requirements: list[str] = Field(default_factory=list)
    test_types: list[str] = Field(default_factory=lambda: ["functional", "ux"])
    max_test_cases: int = Field(default=20, ge=1)
    priority: Literal["low", "medium", "high"] = "medium"

    def display_name(self) -> str:
        if self.site_name:
            return self.site_name
        host = urlparse(self.target_url).hostname or ""
        return host.removeprefix("www.") or "target site"

    def render(self) -> str:
        """Markdown block injected into stage instructions."""
        lines = [
            f"- Target site: {self.target_url or '(unknown)'}",
            f"- Site name: {self.display_name()}",
            f"- Maximum test cases: {self.max_test_cases}",
            f"- Priority: {self.priority}",
        ]
        if self.test_requirements:
            lines.append("- Requirements:")
            lines.extend(f"  {i}. {req}" for i, req in enumerate(self.test_requirements, 1))
        if self.test_types:
            lines.append("- Test types:")
            lines.extend(f"  - {TEST_TYPE_NAMES.get(t, t)}" for t in self.test_types)
        return "\n".join(lines)


def load_profile(work_dir: str | Path) -> TestProfile | None:
    """Return the saved profile, or ``None`` when absent or unreadable."""
    path = Path(work_dir) / PROFILE_FILE
    text = read_text_lenient(path)
    if text is None:
        return None
    try:
        return TestProfile.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Ignoring unreadable %s: %s", path, exc)
        return None


def save_profile(work_dir: str | Path, profile: TestProfile) -> Path:
    path = Path(work_dir) / PROFILE_FILE
    atomic_write_text(path, profile.model_dump_json(indent=2) + "\n")
    return path
