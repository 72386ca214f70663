"""TaskFlow.

A local-first task manager that mirrors tasks against GitHub Issues:
- tasks and repositories persisted as local JSON
- settings loaded from `.env`
- structured logging
- a bidirectional, incremental sync engine
"""

__version__ = "0.1.0"

from taskflow.config import TaskflowSettings

__all__ = ["__version__", "TaskflowSettings"]
