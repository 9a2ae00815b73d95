"""Centralized prompt catalog.

Every instruction the stage agents send to the backend is stored in
``templates.yaml`` (next to this module) and loaded by :class:`PromptCatalog`.
"""

from e2e_robot.prompts.catalog import PromptCatalog

__all__ = ["PromptCatalog"]
