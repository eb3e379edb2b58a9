"""
Looking Glass automation core.

Event bus, rule engine, action framework and flow orchestrator for a
multi-source monitoring platform.
"""

__version__ = "0.1.0"
