"""
Plotline Entity Discovery

Two-phase entity canonicalization:

1. Discovery - one generation call per chunk surfaces raw name/description
   mentions, with no ordering dependency between chunks.
2. Resolution - mentions are bucketed by literal name and submitted once,
   so the model folds nicknames, titles and typos into canonical entities.

Resolution output is post-processed so the entity set is fully determined by
the discovered names: nothing is invented, nothing is lost.
"""

import asyncio
import json
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from plotline.core.constants import (
    ENTITY_ID_PREFIX,
    ENTITY_ID_WIDTH,
    LLMFunction,
    MAX_DESCRIPTIONS_PER_NAME,
    STAGE_DISCOVERY,
    STAGE_RESOLUTION,
)
from plotline.core.logging_config import get_logger
from plotline.core.retry import fixed_delay_config, retry_async_call
from plotline.llm.llm_config import GenerationCapability
from plotline.models.story import (
    CanonicalEntity,
    DiscoveredEntityMention,
    EntityDiscovery,
    EntityImportance,
    EntityResolution,
    MentionBucket,
)
from plotline.pipelines.concurrency_manager import (
    ConcurrencyManager,
    FailurePolicy,
    PipelinePhase,
    get_concurrency_manager,
    run_bounded_detailed,
)
from plotline.utils.chunk_manager import TextChunk

logger = get_logger("pipelines.discovery")

ProgressCallback = Callable[[str, int, int], None]

DERIVED_ENTITY_FIELDS = frozenset({"visual_traits", "appearances", "roles"})


def _name_key(name: str) -> str:
    return name.strip().casefold()


def mint_entity_id(number: int) -> str:
    """CHAR_001, CHAR_002, ... (1-based)."""
    return f"{ENTITY_ID_PREFIX}{number:0{ENTITY_ID_WIDTH}d}"


# =============================================================================
# REGISTRY
# =============================================================================

class EntityRegistry:
    """
    Canonical entities indexed by id and by every name they go by.

    Name lookups are case-insensitive. Entities only ever gain aliases and
    derived fields; their id and name never change.
    """

    def __init__(self, entities: Iterable[CanonicalEntity] = ()):
        self._entities: Dict[str, CanonicalEntity] = {}
        self._alias_index: Dict[str, str] = {}
        for entity in entities:
            self.register(entity)

    def register(self, entity: CanonicalEntity) -> None:
        if not entity.id:
            raise ValueError(f"Entity '{entity.name}' has no id")
        if entity.id in self._entities:
            raise ValueError(f"Duplicate entity id: {entity.id}")
        self._entities[entity.id] = entity
        self._index_names(entity.id, entity.all_names)

    def _index_names(self, entity_id: str, names: Iterable[str]) -> None:
        for name in names:
            key = _name_key(name)
            owner = self._alias_index.setdefault(key, entity_id)
            if owner != entity_id:
                logger.debug(f"Name '{name}' already belongs to {owner}, not indexing for {entity_id}")

    def get(self, entity_id: str) -> Optional[CanonicalEntity]:
        return self._entities.get(entity_id)

    def lookup(self, ref: str) -> Optional[CanonicalEntity]:
        """Find an entity by id, or by name or alias."""
        if not ref:
            return None
        if ref in self._entities:
            return self._entities[ref]
        entity_id = self._alias_index.get(_name_key(ref))
        return self._entities.get(entity_id) if entity_id else None

    def resolve_id(self, ref: str) -> Optional[str]:
        entity = self.lookup(ref)
        return entity.id if entity else None

    def add_aliases(self, entity_id: str, names: Iterable[str]) -> CanonicalEntity:
        """Union new names into an entity's aliases."""
        entity = self._require(entity_id)
        aliases = entity.all_names + [n.strip() for n in names if n.strip()]
        updated = entity.model_copy(update={"aliases": list(dict.fromkeys(aliases))})
        self._entities[entity_id] = updated
        self._index_names(entity_id, updated.aliases)
        return updated

    def attach(self, entity_id: str, **fields) -> CanonicalEntity:
        """Set derived fields (visual_traits, appearances, roles) on an entity."""
        unknown = set(fields) - DERIVED_ENTITY_FIELDS
        if unknown:
            raise ValueError(f"Cannot attach non-derived fields: {sorted(unknown)}")
        updated = self._require(entity_id).model_copy(update=fields)
        self._entities[entity_id] = updated
        return updated

    def _require(self, entity_id: str) -> CanonicalEntity:
        if entity_id not in self._entities:
            raise KeyError(f"Unknown entity id: {entity_id}")
        return self._entities[entity_id]

    @property
    def entities(self) -> List[CanonicalEntity]:
        return list(self._entities.values())

    def as_dict(self) -> Dict[str, CanonicalEntity]:
        return dict(self._entities)

    def roster(self) -> str:
        """One line per entity, for prompts."""
        lines = []
        for entity in self._entities.values():
            others = [a for a in entity.aliases if a != entity.name]
            alias_text = f" (aka {', '.join(others)})" if others else ""
            lines.append(f"- {entity.id}: {entity.name}{alias_text}")
        return "\n".join(lines)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def __iter__(self) -> Iterator[CanonicalEntity]:
        return iter(list(self._entities.values()))


# =============================================================================
# PURE HELPERS
# =============================================================================

def aggregate_mentions(
    mentions: Iterable[DiscoveredEntityMention],
    max_descriptions: int = MAX_DESCRIPTIONS_PER_NAME
) -> List[MentionBucket]:
    """
    Group mentions by literal name, in first-seen order.

    Each bucket keeps up to max_descriptions distinct non-empty descriptions.
    """
    buckets: Dict[str, List[str]] = {}
    for mention in mentions:
        name = mention.name.strip()
        if not name:
            continue
        descriptions = buckets.setdefault(name, [])
        description = mention.description.strip()
        if description and description not in descriptions and len(descriptions) < max_descriptions:
            descriptions.append(description)

    return [MentionBucket(name=name, descriptions=descs) for name, descs in buckets.items()]


def close_resolution(
    resolved: Iterable[CanonicalEntity],
    buckets: List[MentionBucket]
) -> List[CanonicalEntity]:
    """
    Make a resolution reply consistent with the discovered names.

    - Entities none of whose names were discovered are dropped.
    - A discovered name claimed by two entities stays with the first.
    - Every unclaimed discovered name becomes its own "extra" entity.
    - Ids are minted in output order, ignoring whatever the model proposed.
    """
    discovered: Dict[str, str] = {}
    for bucket in buckets:
        discovered.setdefault(_name_key(bucket.name), bucket.name)
    claimed = set()
    kept: List[CanonicalEntity] = []

    for entity in resolved:
        own = []
        for name in entity.all_names:
            key = _name_key(name)
            if key in discovered and key not in claimed:
                claimed.add(key)
                own.append(discovered[key])
        if not own:
            logger.debug(f"Dropping resolved entity with no discovered name: {entity.name}")
            continue

        name = entity.name.strip()
        if _name_key(name) in discovered and discovered[_name_key(name)] not in own:
            # Its chosen name went to an earlier entity
            name = own[0]
        aliases = list(dict.fromkeys([name, *own]))
        kept.append(entity.model_copy(update={"name": name, "aliases": aliases}))

    descriptions = {_name_key(b.name): b.descriptions for b in buckets}
    for key, literal in discovered.items():
        if key not in claimed:
            kept.append(CanonicalEntity(
                name=literal,
                aliases=[literal],
                description=descriptions[key][0] if descriptions[key] else "",
                importance=EntityImportance.EXTRA
            ))

    return [
        entity.model_copy(update={"id": mint_entity_id(number)})
        for number, entity in enumerate(kept, start=1)
    ]


# =============================================================================
# STAGE
# =============================================================================

class DiscoveryStage:
    """
    Surfaces entity mentions per chunk and resolves them into a registry.

    Discovery failures are isolated by default: a chunk whose call fails
    contributes no mentions, the rest carry on.
    """

    DISCOVERY_PROMPT = """You are a literary analyst. Read a fragment of a novel and list every named
entity that appears in it: characters first, plus any named group or creature
that acts in the story.

For each entity give:
- name: exactly as written in the fragment
- description: who they are or what they do in this fragment, in one sentence

Do not invent entities that are not in the text."""

    RESOLUTION_PROMPT = """You are an entity alignment expert. You receive names found across a whole
novel, each with sample descriptions. Several names may denote the same
individual (nicknames, titles, honorifics, typos).

1. Identity: use the descriptions to decide which names are the same individual.
2. Normalization: pick the most formal name as `name`; put every other name in `aliases`.
3. Importance: "major" for protagonists, "minor" for recurring roles, "extra" otherwise.
4. Only use names from the input list."""

    def __init__(
        self,
        llm: GenerationCapability,
        concurrency: Optional[int] = None,
        policy: FailurePolicy = FailurePolicy.ISOLATE,
        max_descriptions: int = MAX_DESCRIPTIONS_PER_NAME,
        retry_delay: float = 2.0,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        manager: Optional[ConcurrencyManager] = None
    ):
        """
        Initialize the discovery stage.

        Args:
            llm: Generation capability
            concurrency: Parallel discovery calls (phase default if omitted)
            policy: Failure policy for per-chunk calls
            max_descriptions: Descriptions kept per name for resolution
            retry_delay: Seconds to wait before the single retry of a chunk
            cancel_event: Stops dispatch of further chunks once set
            on_progress: Called as (stage_name, completed, total)
            manager: Concurrency manager for limits and stats
        """
        self.llm = llm
        self.manager = manager or get_concurrency_manager()
        if concurrency is None:
            concurrency = self.manager.get_limit(PipelinePhase.DISCOVERY)
        self.concurrency = concurrency
        self.policy = policy
        self.max_descriptions = max_descriptions
        self.retry_config = fixed_delay_config(retry_delay, max_retries=1)
        self.cancel_event = cancel_event
        self.on_progress = on_progress
        self.errors: Dict[int, BaseException] = {}

    def _report(self, stage: str, completed: int, total: int) -> None:
        if self.on_progress:
            self.on_progress(stage, completed, total)

    async def discover_chunk(self, chunk: TextChunk) -> List[DiscoveredEntityMention]:
        """Run the discovery call for one chunk."""
        result = await self.llm.generate_structured(
            f"Fragment {chunk.index + 1}:\n\n{chunk.content}",
            EntityDiscovery,
            system_prompt=self.DISCOVERY_PROMPT,
            function=LLMFunction.DISCOVERY,
            temperature=0.1
        )
        return list(result.entities)

    async def discover_mentions(
        self,
        chunks: List[TextChunk]
    ) -> List[Optional[List[DiscoveredEntityMention]]]:
        """
        Discover mentions in every chunk concurrently.

        Returns:
            Per-chunk mention lists in chunk order; None where the call failed
        """
        total = len(chunks)
        logger.info(f"Discovering entities in {total} chunks (concurrency={self.concurrency})")
        self._report(STAGE_DISCOVERY, 0, total)

        outcome = await run_bounded_detailed(
            [
                lambda chunk=chunk: retry_async_call(self.discover_chunk, chunk, config=self.retry_config)
                for chunk in chunks
            ],
            self.concurrency,
            policy=self.policy,
            cancel_event=self.cancel_event,
            on_task_done=lambda _i, done, n: self._report(STAGE_DISCOVERY, done, n),
            phase=PipelinePhase.DISCOVERY,
            manager=self.manager
        )
        self.errors = dict(outcome.errors)

        found = sum(len(m) for m in outcome.results if m)
        logger.info(
            f"Discovery finished: {found} mentions, {len(outcome.errors)} failed chunks"
        )
        return outcome.results

    async def resolve(self, buckets: List[MentionBucket]) -> List[CanonicalEntity]:
        """
        Collapse mention buckets into canonical entities with one call.

        Empty input returns [] without calling the model.
        """
        if not buckets:
            logger.info("No entity mentions to resolve")
            return []

        self._report(STAGE_RESOLUTION, 0, 1)
        payload = json.dumps([b.model_dump() for b in buckets], ensure_ascii=False, indent=2)
        result = await self.llm.generate_structured(
            f"Names found in the novel, with sample descriptions:\n{payload}\n\n"
            "Merge the entries that denote the same individual.",
            EntityResolution,
            system_prompt=self.RESOLUTION_PROMPT,
            function=LLMFunction.RESOLUTION,
            temperature=0.1
        )

        entities = close_resolution(result.entities, buckets)
        self._report(STAGE_RESOLUTION, 1, 1)
        logger.info(f"Resolved {len(buckets)} names into {len(entities)} canonical entities")
        return entities

    async def discover(self, chunks: List[TextChunk]) -> List[CanonicalEntity]:
        """Discover, aggregate and resolve in one go."""
        per_chunk = await self.discover_mentions(chunks)
        mentions = [m for chunk_mentions in per_chunk if chunk_mentions for m in chunk_mentions]
        buckets = aggregate_mentions(mentions, self.max_descriptions)
        return await self.resolve(buckets)
