"""
Plotline Agents Module

LLM agents that enrich the resolved story model.
"""

from .character_designer import CharacterDesigner

__all__ = [
    'CharacterDesigner',
]
