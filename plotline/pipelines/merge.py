"""
Plotline Merge

Folds per-chunk analyses into one globally consistent story graph.

Every event gets a global id (E001, E002, ...) in chunk order. Relations are
remapped through the local->global map of the chunk they came from, so two
chunks that both used "E001" never collide. Entity references are resolved
against the canonical registry. An optional consolidation pass then collapses
semantically duplicated events into canonical ones.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Union

from plotline.core.constants import (
    EVENT_ID_PREFIX,
    EVENT_ID_WIDTH,
    LLMFunction,
    STAGE_CONSOLIDATION,
)
from plotline.core.exceptions import ResolutionInconsistency
from plotline.core.logging_config import get_logger
from plotline.llm.llm_config import GenerationCapability
from plotline.models.story import (
    CanonicalEntity,
    CausalRelation,
    ChunkAnalysis,
    Event,
    MergedGraph,
    PlotGraphConsolidation,
)
from plotline.pipelines.discovery import EntityRegistry

logger = get_logger("pipelines.merge")


def format_event_id(number: int) -> str:
    """E001, E002, ... growing wider past E999."""
    return f"{EVENT_ID_PREFIX}{number:0{EVENT_ID_WIDTH}d}"


@dataclass(frozen=True)
class MergeState:
    """Accumulator threaded through merge_chunk, one chunk at a time."""
    next_event_number: int = 1
    events: List[Event] = field(default_factory=list)
    relations: List[CausalRelation] = field(default_factory=list)
    entities: Dict[str, CanonicalEntity] = field(default_factory=dict)
    summaries: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    failed_chunks: List[int] = field(default_factory=list)

    def to_graph(self) -> MergedGraph:
        return MergedGraph(
            full_summary="\n\n".join(self.summaries),
            events=self.events,
            entities=self.entities,
            relations=self.relations,
            warnings=self.warnings,
            failed_chunks=self.failed_chunks
        )


def _flag(chunk_index: int, reason: str, warnings: List[str], strict: bool) -> None:
    if strict:
        raise ResolutionInconsistency(chunk_index, reason)
    message = f"Chunk {chunk_index}: {reason}"
    logger.warning(message)
    warnings.append(message)


def _with_appearance(entity: CanonicalEntity, chunk_index: int, role: str = "") -> CanonicalEntity:
    appearances = entity.appearances if chunk_index in entity.appearances else [*entity.appearances, chunk_index]
    role = role.strip()
    roles = entity.roles if not role or role in entity.roles else [*entity.roles, role]
    if appearances is entity.appearances and roles is entity.roles:
        return entity
    return entity.model_copy(update={"appearances": appearances, "roles": roles})


def merge_chunk(
    state: MergeState,
    chunk_index: int,
    analysis: Optional[ChunkAnalysis],
    registry: EntityRegistry,
    strict: bool = False
) -> MergeState:
    """
    Merge one chunk's analysis into the accumulated state.

    Args:
        state: State after the previous chunks
        chunk_index: Index of the chunk being merged
        analysis: Its analysis, or None if the chunk failed
        registry: Canonical entities to resolve references against
        strict: Raise ResolutionInconsistency instead of dropping bad references

    Returns:
        A new state; the given one is left untouched
    """
    if analysis is None:
        return replace(state, failed_chunks=[*state.failed_chunks, chunk_index])

    number = state.next_event_number
    events = list(state.events)
    relations = list(state.relations)
    entities = dict(state.entities)
    warnings = list(state.warnings)

    local_to_global: Dict[str, str] = {}
    for event in analysis.events:
        global_id = format_event_id(number)
        number += 1
        if event.id in local_to_global:
            # Relations keep pointing at the first event with this id
            _flag(chunk_index, f"duplicate local event id {event.id}", warnings, strict=False)
        else:
            local_to_global[event.id] = global_id

        entity_ids: List[str] = []
        for ref in event.entity_ids:
            entity_id = registry.resolve_id(ref)
            if entity_id is None:
                _flag(chunk_index, f"event {event.id} references unknown entity '{ref}'", warnings, strict)
            elif entity_id not in entity_ids:
                entity_ids.append(entity_id)
                entity = entities.get(entity_id) or registry.get(entity_id)
                entities[entity_id] = _with_appearance(entity, chunk_index)

        events.append(event.model_copy(update={
            "id": global_id,
            "local_id": event.id,
            "chunk_index": chunk_index,
            "entity_ids": entity_ids,
        }))

    for relation in analysis.causal_relations:
        source = local_to_global.get(relation.from_event_id)
        target = local_to_global.get(relation.to_event_id)
        if source is None or target is None:
            _flag(
                chunk_index,
                f"dropped relation {relation.from_event_id} -> {relation.to_event_id} "
                f"with unknown endpoint",
                warnings,
                strict
            )
            continue
        relations.append(relation.model_copy(update={"from_event_id": source, "to_event_id": target}))

    for reference in analysis.entity_references:
        entity_id = registry.resolve_id(reference.id)
        if entity_id is None:
            _flag(chunk_index, f"unknown entity reference '{reference.id}'", warnings, strict)
            continue
        entity = entities.get(entity_id) or registry.get(entity_id)
        entities[entity_id] = _with_appearance(entity, chunk_index, reference.role)

    return replace(
        state,
        next_event_number=number,
        events=events,
        relations=relations,
        entities=entities,
        summaries=[*state.summaries, analysis.summary] if analysis.summary else state.summaries,
        warnings=warnings
    )


def merge_analyses(
    analyses: Sequence[Optional[ChunkAnalysis]],
    entities: Union[EntityRegistry, List[CanonicalEntity]],
    strict: bool = False
) -> MergedGraph:
    """
    Merge analyses in chunk order into a MergedGraph.

    Args:
        analyses: One entry per chunk, None where the chunk failed
        entities: Canonical entities from resolution
        strict: Raise on dangling relations and unknown entity references

    Returns:
        Graph with gap-free global event ids
    """
    registry = entities if isinstance(entities, EntityRegistry) else EntityRegistry(entities)
    state = MergeState(entities=registry.as_dict())
    for chunk_index, analysis in enumerate(analyses):
        state = merge_chunk(state, chunk_index, analysis, registry, strict=strict)

    graph = state.to_graph()
    logger.info(
        f"Merged {len(analyses)} chunks: {len(graph.events)} events, "
        f"{len(graph.relations)} relations, {len(graph.warnings)} warnings, "
        f"{len(graph.failed_chunks)} failed chunks"
    )
    return graph


def _canonical_targets(event_ids: List[str], mapping: Dict[str, str]) -> Dict[str, str]:
    """Follow mapping chains to their end, ignoring targets that do not exist."""
    known = set(event_ids)
    resolved: Dict[str, str] = {}
    for event_id in event_ids:
        chain = [event_id]
        current = event_id
        while current in mapping:
            target = mapping[current]
            if target not in known:
                break
            if target in chain:
                # Cycle: the smallest id in it wins
                current = min(chain[chain.index(target):])
                break
            chain.append(target)
            current = target
        resolved[event_id] = current
    return resolved


def apply_event_mapping(graph: MergedGraph, mapping: Dict[str, str]) -> MergedGraph:
    """
    Collapse events according to an original -> canonical id mapping.

    Surviving events keep their ids. Entity ids of collapsed events fold into
    their canonical event; relations are rewritten, and self-loops and
    duplicate edges are removed.
    """
    if not mapping:
        return graph

    canonical = _canonical_targets(graph.event_ids, mapping)
    absorbed: Dict[str, List[str]] = {}
    for event in graph.events:
        target = canonical[event.id]
        if target != event.id:
            absorbed.setdefault(target, []).extend(event.entity_ids)

    events = []
    for event in graph.events:
        if canonical[event.id] != event.id:
            continue
        extra = absorbed.get(event.id)
        if extra:
            merged_ids = list(dict.fromkeys([*event.entity_ids, *extra]))
            event = event.model_copy(update={"entity_ids": merged_ids})
        events.append(event)

    relations = []
    seen_edges = set()
    for relation in graph.relations:
        source = canonical.get(relation.from_event_id, relation.from_event_id)
        target = canonical.get(relation.to_event_id, relation.to_event_id)
        if source == target or (source, target) in seen_edges:
            continue
        seen_edges.add((source, target))
        relations.append(relation.model_copy(update={"from_event_id": source, "to_event_id": target}))

    removed = len(graph.events) - len(events)
    if removed:
        logger.info(f"Collapsed {removed} duplicate events")
    return graph.model_copy(update={"events": events, "relations": relations})


class PlotGraphConsolidator:
    """
    Global de-duplication pass over a merged graph.

    One generation call lists every event as "[id] summary" and asks for an
    original -> canonical mapping plus a whole-story summary.
    """

    SYSTEM_PROMPT = """You are a plot logic auditor. You receive every event of a novel, one per
line, as "[id] summary". Events from overlapping fragments may describe the
same moment twice.

1. Map every duplicated event id to the id of the event that should be kept
   (the earliest one). Do not map events that are merely similar.
2. Write a global summary of the whole story."""

    def __init__(
        self,
        llm: GenerationCapability,
        on_progress: Optional[Callable[[str, int, int], None]] = None
    ):
        self.llm = llm
        self.on_progress = on_progress

    async def consolidate(self, graph: MergedGraph) -> MergedGraph:
        if not graph.events:
            return graph

        if self.on_progress:
            self.on_progress(STAGE_CONSOLIDATION, 0, 1)

        event_lines = "\n".join(f"[{e.id}] {e.summary}" for e in graph.events)
        result: PlotGraphConsolidation = await self.llm.generate_structured(
            f"## Events\n{event_lines}\n\nIdentify duplicate event ids and write the global summary.",
            PlotGraphConsolidation,
            system_prompt=self.SYSTEM_PROMPT,
            function=LLMFunction.CONSOLIDATION,
            temperature=0.1
        )

        mapping = {m.original_id: m.canonical_id for m in result.event_mappings}
        consolidated = apply_event_mapping(graph, mapping)
        if result.global_summary.strip():
            consolidated = consolidated.model_copy(update={"full_summary": result.global_summary.strip()})

        if self.on_progress:
            self.on_progress(STAGE_CONSOLIDATION, 1, 1)
        logger.info(
            f"Consolidation: {len(graph.events)} -> {len(consolidated.events)} events"
        )
        return consolidated
