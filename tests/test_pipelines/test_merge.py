"""
Tests for Merge Module

Tests for plotline/pipelines/merge.py
"""

import pytest

from plotline.core.constants import LLMFunction
from plotline.core.exceptions import ResolutionInconsistency
from plotline.models.story import CanonicalEntity, ChunkAnalysis, MergedGraph
from plotline.pipelines.discovery import EntityRegistry
from plotline.pipelines.merge import (
    MergeState,
    PlotGraphConsolidator,
    apply_event_mapping,
    format_event_id,
    merge_analyses,
    merge_chunk,
)


ENTITIES = [
    CanonicalEntity(id="CHAR_001", name="Li San", aliases=["San-ge"]),
    CanonicalEntity(id="CHAR_002", name="Innkeeper Wu"),
]


def analysis(summary, events, relations=(), references=()):
    return ChunkAnalysis.model_validate({
        "summary": summary,
        "events": [
            {"id": eid, "summary": text, "entity_ids": list(refs)}
            for eid, text, refs in events
        ],
        "causal_relations": [
            {"from_event_id": a, "to_event_id": b} for a, b in relations
        ],
        "entity_references": [{"id": ref, "role": role} for ref, role in references],
    })


@pytest.fixture
def two_chunks():
    """Both chunks number their events from E001."""
    return [
        analysis(
            "Li San arrives.",
            [("E001", "Li San enters the inn", ["CHAR_001"]),
             ("E002", "Wu pours wine", ["CHAR_002"])],
            relations=[("E001", "E002")],
            references=[("CHAR_001", "guest")],
        ),
        analysis(
            "A fight breaks out.",
            [("E001", "San-ge draws his blade", ["San-ge"])],
            references=[("Innkeeper Wu", "witness")],
        ),
    ]


class TestFormatEventId:
    """Tests for global event id formatting."""

    def test_padding(self):
        assert format_event_id(1) == "E001"
        assert format_event_id(42) == "E042"
        assert format_event_id(1000) == "E1000"


class TestMergeAnalyses:
    """Tests for merging chunk analyses."""

    def test_local_ids_never_collide(self, two_chunks):
        """Test chunk 2's local E001 becomes a new global id."""
        graph = merge_analyses(two_chunks, ENTITIES)

        assert graph.event_ids == ["E001", "E002", "E003"]
        fight = graph.get_event("E003")
        assert fight.local_id == "E001"
        assert fight.chunk_index == 1
        assert fight.entity_ids == ["CHAR_001"]
        assert [(r.from_event_id, r.to_event_id) for r in graph.relations] == [("E001", "E002")]
        assert graph.full_summary == "Li San arrives.\n\nA fight breaks out."
        assert graph.warnings == []

    def test_relations_remapped_per_chunk(self):
        """Test relations use the map of the chunk they came from."""
        analyses = [
            analysis("a", [("E001", "one", [])]),
            analysis("b", [("E001", "two", []), ("E002", "three", [])], relations=[("E001", "E002")]),
        ]

        graph = merge_analyses(analyses, ENTITIES)

        assert [(r.from_event_id, r.to_event_id) for r in graph.relations] == [("E002", "E003")]

    def test_appearances_and_roles_derived(self, two_chunks):
        """Test entity appearances and roles come from references."""
        graph = merge_analyses(two_chunks, ENTITIES)

        li_san = graph.entities["CHAR_001"]
        wu = graph.entities["CHAR_002"]
        assert li_san.appearances == [0, 1]
        assert li_san.roles == ["guest"]
        assert wu.appearances == [0, 1]
        assert wu.roles == ["witness"]

    def test_dangling_relation_dropped_with_warning(self):
        """Test a relation to an unknown local id is dropped."""
        analyses = [analysis("a", [("E001", "one", [])], relations=[("E001", "E009")])]

        graph = merge_analyses(analyses, ENTITIES)

        assert graph.relations == []
        assert len(graph.warnings) == 1
        assert "E009" in graph.warnings[0]

    def test_strict_mode_raises(self):
        """Test strict merge raises on the first inconsistency."""
        analyses = [analysis("a", [("E001", "one", [])], relations=[("E001", "E009")])]

        with pytest.raises(ResolutionInconsistency) as exc_info:
            merge_analyses(analyses, ENTITIES, strict=True)
        assert exc_info.value.chunk_index == 0

    def test_unknown_entity_reference(self):
        """Test non-canonical references are dropped or raised."""
        analyses = [analysis("a", [("E001", "one", ["CHAR_404", "CHAR_002"])])]

        graph = merge_analyses(analyses, ENTITIES)
        assert graph.events[0].entity_ids == ["CHAR_002"]
        assert "CHAR_404" in graph.warnings[0]

        with pytest.raises(ResolutionInconsistency):
            merge_analyses(analyses, ENTITIES, strict=True)

    def test_failed_chunks_leave_no_gaps(self):
        """Test None analyses are recorded and ids stay contiguous."""
        analyses = [
            analysis("a", [("E001", "one", [])]),
            None,
            analysis("c", [("E001", "two", []), ("E002", "three", [])]),
        ]

        graph = merge_analyses(analyses, ENTITIES)

        assert graph.failed_chunks == [1]
        assert graph.event_ids == ["E001", "E002", "E003"]
        assert graph.full_summary == "a\n\nc"

    def test_duplicate_local_id_warns(self):
        """Test a repeated local id gets its own global id and a warning."""
        analyses = [analysis("a", [("E001", "one", []), ("E001", "again", [])], relations=[("E001", "E001")])]

        graph = merge_analyses(analyses, ENTITIES, strict=True)

        assert graph.event_ids == ["E001", "E002"]
        assert any("duplicate" in w for w in graph.warnings)
        assert [(r.from_event_id, r.to_event_id) for r in graph.relations] == [("E001", "E001")]

    def test_merge_chunk_leaves_state_untouched(self, two_chunks):
        """Test merge_chunk returns a new state."""
        registry = EntityRegistry(ENTITIES)
        state = MergeState(entities=registry.as_dict())

        after = merge_chunk(state, 0, two_chunks[0], registry)

        assert state.events == []
        assert state.next_event_number == 1
        assert after.next_event_number == 3
        assert len(after.events) == 2

    def test_merge_chunk_into_empty_state(self, two_chunks):
        """Test a default state takes entities from the registry."""
        registry = EntityRegistry(ENTITIES)

        after = merge_chunk(MergeState(), 1, two_chunks[1], registry)

        assert after.events[0].entity_ids == ["CHAR_001"]
        assert after.entities["CHAR_001"].appearances == [1]
        assert after.entities["CHAR_002"].appearances == [1]
        assert after.entities["CHAR_002"].roles == ["witness"]
        assert registry.get("CHAR_001").appearances == []

    def test_every_relation_endpoint_exists(self, two_chunks):
        """Test merged relations only point at merged events."""
        graph = merge_analyses(two_chunks * 3, ENTITIES)
        ids = set(graph.event_ids)
        assert len(ids) == len(graph.events) == 9
        for relation in graph.relations:
            assert relation.from_event_id in ids
            assert relation.to_event_id in ids

    def test_graph_round_trips_through_json(self, two_chunks, temp_dir):
        """Test the merged graph persists."""
        graph = merge_analyses(two_chunks, ENTITIES)
        path = temp_dir / "out" / "graph.json"

        graph.save(path)

        assert MergedGraph.load(path) == graph


class TestApplyEventMapping:
    """Tests for collapsing duplicate events."""

    @pytest.fixture
    def graph(self):
        analyses = [analysis(
            "s",
            [("E001", "one", ["CHAR_001"]), ("E002", "two", ["CHAR_002"]),
             ("E003", "three", []), ("E004", "four", [])],
            relations=[("E001", "E002"), ("E002", "E003"), ("E001", "E003"), ("E003", "E004")],
        )]
        return merge_analyses(analyses, ENTITIES)

    def test_collapse_folds_entities_and_rewrites_relations(self, graph):
        """Test the canonical event absorbs the duplicate."""
        result = apply_event_mapping(graph, {"E002": "E001"})

        assert result.event_ids == ["E001", "E003", "E004"]
        assert result.get_event("E001").entity_ids == ["CHAR_001", "CHAR_002"]
        edges = [(r.from_event_id, r.to_event_id) for r in result.relations]
        # E001->E002 became a self-loop; E002->E003 duplicates E001->E003
        assert edges == [("E001", "E003"), ("E003", "E004")]

    def test_chains_resolve_to_the_end(self, graph):
        """Test A->B->C maps A to C."""
        result = apply_event_mapping(graph, {"E004": "E003", "E003": "E001"})
        assert result.event_ids == ["E001", "E002"]

    def test_cycle_resolves_to_smallest_id(self, graph):
        """Test a mapping cycle collapses onto its smallest member."""
        result = apply_event_mapping(graph, {"E003": "E002", "E002": "E003"})
        assert result.event_ids == ["E001", "E002", "E004"]

    def test_unknown_target_ignored(self, graph):
        """Test a mapping to a missing event is skipped."""
        result = apply_event_mapping(graph, {"E002": "E999"})
        assert result.event_ids == graph.event_ids

    def test_empty_mapping_is_identity(self, graph):
        assert apply_event_mapping(graph, {}) is graph


class TestPlotGraphConsolidator:
    """Tests for the consolidation pass."""

    @pytest.mark.asyncio
    async def test_consolidate(self, make_llm, two_chunks):
        """Test one call collapses duplicates and sets the global summary."""
        llm = make_llm({LLMFunction.CONSOLIDATION: {
            "global_summary": "  A swordsman stirs trouble at an inn.  ",
            "event_mappings": [{"original_id": "E003", "canonical_id": "E001"}],
        }})
        events = []
        consolidator = PlotGraphConsolidator(llm, on_progress=lambda *a: events.append(a))

        result = await consolidator.consolidate(merge_analyses(two_chunks, ENTITIES))

        assert result.event_ids == ["E001", "E002"]
        assert result.full_summary == "A swordsman stirs trouble at an inn."
        call = llm.calls[0]
        assert "[E003] San-ge draws his blade" in call.prompt
        assert call.temperature == 0.1
        assert events == [("Consolidation", 0, 1), ("Consolidation", 1, 1)]

    @pytest.mark.asyncio
    async def test_empty_graph_skips_call(self, make_llm):
        """Test no events means no call."""
        llm = make_llm()
        graph = MergedGraph()
        assert await PlotGraphConsolidator(llm).consolidate(graph) is graph
        assert llm.calls == []
