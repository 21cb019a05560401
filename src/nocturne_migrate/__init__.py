"""
Nocturne Migrate
================
Resumable MongoDB to PostgreSQL migration with backup, rollback and recovery.
"""

__version__ = "1.0.0"

TOOL_NAME = "nocturne-migrate"
TOOL_VERSION = f"{TOOL_NAME} {__version__}"
