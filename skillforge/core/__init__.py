"""
SkillForge - Core Package
=========================

Configuration, persistence, models, schemas and the chain engine.
"""

from skillforge.core.config import settings
from skillforge.core.database import Base, get_db, get_session_factory

__all__ = ["Base", "get_db", "get_session_factory", "settings"]
