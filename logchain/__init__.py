"""
Log Chain Service
=================

Multi-tenant, tamper-evident log storage:
- PostgreSQL as single source of truth
- FastAPI for the HTTP API
- Per-application HMAC-SHA256 hash chains over canonical payloads
- Chain verification reporting every gap, broken link and modified record
"""

__version__ = "1.0.0"
__author__ = "Log Chain Service Team"
