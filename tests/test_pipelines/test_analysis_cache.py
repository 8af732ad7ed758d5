"""
Tests for Analysis Cache Module

Tests for plotline/pipelines/analysis_cache.py
"""

import pytest

from plotline.models.story import ChunkAnalysis
from plotline.pipelines.analysis_cache import AnalysisCache


@pytest.fixture
def cache(temp_dir):
    return AnalysisCache(temp_dir / "analyses")


class TestAnalysisCache:
    """Tests for AnalysisCache."""

    def test_save_and_load(self, cache):
        """Test an analysis survives a save/load cycle."""
        analysis = ChunkAnalysis(summary="Rain over the inn.", events=[{"id": "E001", "summary": "Rain"}])

        path = cache.save(3, analysis)

        assert path.name == "chunk_3_analysis.json"
        assert cache.has(3)
        assert cache.load(3) == analysis

    def test_missing_entry(self, cache):
        """Test a missing index loads as None."""
        assert not cache.has(0)
        assert cache.load(0) is None

    def test_corrupt_entry_ignored(self, cache):
        """Test unreadable files are treated as missing."""
        cache.path_for(1).write_text("{not json", encoding="utf-8")
        cache.path_for(2).write_text('{"events": []}', encoding="utf-8")

        assert cache.load(1) is None
        assert cache.load(2) is None
        assert cache.cached_indices() == [1, 2]

    def test_load_all_and_clear(self, cache):
        """Test bulk loading and clearing."""
        for i in (0, 2, 10):
            cache.save(i, ChunkAnalysis(summary=f"part {i}"))

        loaded = cache.load_all(range(5))

        assert sorted(loaded) == [0, 2]
        assert cache.cached_indices() == [0, 2, 10]
        assert cache.clear() == 3
        assert cache.cached_indices() == []
