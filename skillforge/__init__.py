"""SkillForge - skill chain execution service."""
