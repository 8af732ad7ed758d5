"""
Plotline Story Models

Pydantic models for everything that crosses the generation boundary
(discovery, resolution, extraction and consolidation payloads) and for the
merged story graph handed to downstream consumers.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _unique(values: List[str]) -> List[str]:
    """Ordered de-duplication of non-empty stripped strings."""
    seen = set()
    result = []
    for value in values:
        value = value.strip()
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


class EntityImportance(str, Enum):
    """How central an entity is to the story."""
    MAJOR = "major"
    MINOR = "minor"
    EXTRA = "extra"


# =============================================================================
# DISCOVERY / RESOLUTION
# =============================================================================

class DiscoveredEntityMention(BaseModel):
    """A raw, per-chunk entity mention. Not canonical."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Entity name as written in the fragment")
    description: str = Field(default="", description="Identity or role in this fragment")


class EntityDiscovery(BaseModel):
    """Discovery pass output for one chunk."""
    entities: List[DiscoveredEntityMention] = Field(default_factory=list)


class MentionBucket(BaseModel):
    """Mentions grouped by literal name, with a bounded description sample."""
    name: str
    descriptions: List[str] = Field(default_factory=list)


class CanonicalEntity(BaseModel):
    """A deduplicated, globally identified entity."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default="", description="Unique id, e.g. CHAR_001")
    name: str = Field(description="Most formal name")
    aliases: List[str] = Field(default_factory=list, description="Every other name used")
    description: str = Field(default="")
    importance: EntityImportance = Field(default=EntityImportance.MINOR)

    # Derived fields, attached after resolution
    visual_traits: Optional[str] = None
    appearances: List[int] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)

    @field_validator("aliases")
    @classmethod
    def _dedupe_aliases(cls, value: List[str]) -> List[str]:
        return _unique(value)

    @field_validator("importance", mode="before")
    @classmethod
    def _coerce_importance(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            if value not in {i.value for i in EntityImportance}:
                return EntityImportance.MINOR
        return value

    @property
    def all_names(self) -> List[str]:
        """Name followed by aliases, without duplicates."""
        return _unique([self.name, *self.aliases])


class EntityResolution(BaseModel):
    """Resolution pass output."""
    entities: List[CanonicalEntity] = Field(default_factory=list)


# =============================================================================
# EXTRACTION
# =============================================================================

class Event(BaseModel):
    """A plot event. `id` is chunk-local until merge assigns a global id."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Event id, e.g. E001")
    summary: str = Field(description="One-sentence summary")
    description: str = Field(default="")
    chapter: str = Field(default="", description="Chapter or position marker")
    location: Optional[str] = None
    time: Optional[str] = None
    entity_ids: List[str] = Field(default_factory=list, description="Involved entity ids")
    emotional_tone: str = Field(default="", description="e.g. tense, calm, grief")

    # Set by merge
    local_id: Optional[str] = None
    chunk_index: Optional[int] = None


class CausalRelation(BaseModel):
    """Directed cause -> effect link between two events."""
    model_config = ConfigDict(frozen=True)

    from_event_id: str
    to_event_id: str
    strength: str = Field(default="medium", description="strong, medium or weak")
    description: str = Field(default="")


class EntityReference(BaseModel):
    """A reference from a chunk to a canonical entity."""
    model_config = ConfigDict(frozen=True)

    id: str
    role: str = ""


class SceneBreak(BaseModel):
    """A detected scene transition."""
    model_config = ConfigDict(frozen=True)

    position: str
    reason: str = ""


class ChunkAnalysis(BaseModel):
    """Structured analysis of one chunk."""
    model_config = ConfigDict(frozen=True)

    summary: str = Field(description="Two or three sentence summary of the chunk")
    events: List[Event] = Field(default_factory=list)
    causal_relations: List[CausalRelation] = Field(default_factory=list)
    entity_references: List[EntityReference] = Field(default_factory=list)
    discovered_entities: List[DiscoveredEntityMention] = Field(default_factory=list)
    scene_breaks: List[SceneBreak] = Field(default_factory=list)


# =============================================================================
# CONSOLIDATION
# =============================================================================

class EventMapping(BaseModel):
    """Collapse one event id into a canonical one."""
    original_id: str
    canonical_id: str


class PlotGraphConsolidation(BaseModel):
    """Global de-duplication pass output."""
    global_summary: str = ""
    event_mappings: List[EventMapping] = Field(default_factory=list)


# =============================================================================
# MERGED GRAPH
# =============================================================================

class MergedGraph(BaseModel):
    """The globally consistent event / entity / relation graph."""
    model_config = ConfigDict(frozen=True)

    full_summary: str = ""
    events: List[Event] = Field(default_factory=list)
    entities: Dict[str, CanonicalEntity] = Field(default_factory=dict)
    relations: List[CausalRelation] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    failed_chunks: List[int] = Field(default_factory=list)

    @property
    def event_ids(self) -> List[str]:
        return [event.id for event in self.events]

    def get_event(self, event_id: str) -> Optional[Event]:
        for event in self.events:
            if event.id == event_id:
                return event
        return None

    def save(self, path: Path) -> None:
        """Save graph to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "MergedGraph":
        return cls.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))
