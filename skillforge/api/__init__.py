"""SkillForge - HTTP API."""
