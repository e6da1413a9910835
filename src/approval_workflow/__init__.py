"""Approval workflow engine.

Runs approval flows defined as process graphs (START, APPROVAL, CC, CONDITION
and END nodes) with local JSON persistence, structured logging and a small CLI.
"""

__version__ = "0.1.0"

from approval_workflow.engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
