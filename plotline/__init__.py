"""
Plotline

Concurrent LLM pipeline that turns a novel into a cross-referenced story
graph: canonical entities, global events and causal links.
"""

from plotline.core.constants import VERSION

__version__ = VERSION
