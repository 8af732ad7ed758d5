"""
Plotline Models

Pydantic schemas shared by the pipeline stages.
"""

from .story import (
    CanonicalEntity,
    CausalRelation,
    ChunkAnalysis,
    DiscoveredEntityMention,
    EntityDiscovery,
    EntityImportance,
    EntityReference,
    EntityResolution,
    Event,
    EventMapping,
    MentionBucket,
    MergedGraph,
    PlotGraphConsolidation,
    SceneBreak,
)

__all__ = [
    'CanonicalEntity',
    'CausalRelation',
    'ChunkAnalysis',
    'DiscoveredEntityMention',
    'EntityDiscovery',
    'EntityImportance',
    'EntityReference',
    'EntityResolution',
    'Event',
    'EventMapping',
    'MentionBucket',
    'MergedGraph',
    'PlotGraphConsolidation',
    'SceneBreak',
]
