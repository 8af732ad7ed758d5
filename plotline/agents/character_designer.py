"""
Plotline Character Designer

Compiles each canonical entity's textual description into a fixed visual
descriptor (English, image-model friendly) and attaches it as the derived
`visual_traits` field.
"""

import asyncio
from typing import Callable, Dict, List, Optional

from plotline.core.constants import LLMFunction, STAGE_DESIGN
from plotline.core.logging_config import get_logger
from plotline.core.retry import fixed_delay_config, retry_async_call
from plotline.llm.llm_config import GenerationCapability
from plotline.models.story import CanonicalEntity
from plotline.pipelines.concurrency_manager import (
    ConcurrencyManager,
    FailurePolicy,
    PipelinePhase,
    get_concurrency_manager,
    run_bounded_detailed,
)

logger = get_logger("agents.character_designer")


class CharacterDesigner:
    """
    Writes a visual descriptor per entity.

    Design calls are independent and isolated: an entity whose call fails
    twice is returned unchanged.
    """

    SYSTEM_PROMPT = """You are a character visual compiler. You turn a written character
description into a standard visual description for image generation.

Requirements:
1. No subjective adjectives (beautiful, ugly, handsome, cool, evil, gentle).
2. Physical description:
   - Face: concrete geometry or contrast (square jaw, high cheekbones).
   - Eyes: shape and color (almond eyes, dark brown iris).
   - Clothing: material, cut and layers (silk straight-collar robe under a sheer gauze coat).
3. Colors: specific color names, never vague ones.
4. Output one English paragraph of concrete nouns and state verbs only."""

    def __init__(
        self,
        llm: GenerationCapability,
        retry_delay: float = 2.0,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[Callable[[str, int, int], None]] = None,
        manager: Optional[ConcurrencyManager] = None
    ):
        self.llm = llm
        self.retry_config = fixed_delay_config(retry_delay, max_retries=1)
        self.cancel_event = cancel_event
        self.on_progress = on_progress
        self.manager = manager or get_concurrency_manager()
        self.errors: Dict[str, BaseException] = {}

    async def design_character(self, entity: CanonicalEntity) -> str:
        """Generate the visual descriptor for one entity."""
        logger.debug(f"Designing {entity.id} ({entity.name})")
        prompt = (
            f"Character name: {entity.name}\n"
            f"Description: {entity.description}\n"
            f"Aliases: {', '.join(entity.aliases)}\n\n"
            "Summarize this character's fixed visual traits in English, for "
            "consistent image generation."
        )
        traits = await self.llm.generate(
            prompt,
            system_prompt=self.SYSTEM_PROMPT,
            function=LLMFunction.DESIGN
        )
        return traits.strip()

    async def run(
        self,
        entities: List[CanonicalEntity],
        concurrency: Optional[int] = None
    ) -> List[CanonicalEntity]:
        """
        Design every entity.

        Returns:
            Entities in input order, with visual_traits attached where design succeeded
        """
        if concurrency is None:
            concurrency = self.manager.get_limit(PipelinePhase.DESIGN)
        total = len(entities)
        logger.info(f"Designing visual traits for {total} entities")
        if self.on_progress:
            self.on_progress(STAGE_DESIGN, 0, total)

        outcome = await run_bounded_detailed(
            [
                lambda entity=entity: retry_async_call(self.design_character, entity, config=self.retry_config)
                for entity in entities
            ],
            concurrency,
            policy=FailurePolicy.ISOLATE,
            cancel_event=self.cancel_event,
            on_task_done=self._task_done,
            phase=PipelinePhase.DESIGN,
            manager=self.manager
        )
        self.errors = {entities[i].id: e for i, e in outcome.errors.items()}

        designed = []
        for entity, traits in zip(entities, outcome.results):
            if traits:
                entity = entity.model_copy(update={"visual_traits": traits})
            designed.append(entity)

        logger.info(f"Designed {total - len(outcome.errors) - len(outcome.skipped)}/{total} entities")
        return designed

    def _task_done(self, _index: int, completed: int, total: int) -> None:
        if self.on_progress:
            self.on_progress(STAGE_DESIGN, completed, total)
