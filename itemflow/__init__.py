"""Itemflow - workflow-instance engine.

Tracks how a single work item progresses through a directed graph of typed
steps: linear progression, conditional branching, parallel forks and
barrier-style convergence.
"""

__version__ = "0.1.0"
