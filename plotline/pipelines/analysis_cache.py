"""Per-chunk analysis cache for resuming long extraction runs.

Each chunk analysis is stored as ``chunk_<index>_analysis.json`` in one
directory. Extraction reads cached chunks instead of regenerating them and
writes every fresh analysis back, so an interrupted run resumes where it
stopped.
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from plotline.core.logging_config import get_logger
from plotline.models.story import ChunkAnalysis

logger = get_logger("pipelines.analysis_cache")


class AnalysisCache:
    """Directory-backed store of ChunkAnalysis records keyed by chunk index."""

    FILE_TEMPLATE = "chunk_{index}_analysis.json"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, index: int) -> Path:
        return self.directory / self.FILE_TEMPLATE.format(index=index)

    def has(self, index: int) -> bool:
        return self.path_for(index).exists()

    def load(self, index: int) -> Optional[ChunkAnalysis]:
        """
        Load a cached analysis.

        Returns:
            The analysis, or None when missing or unreadable
        """
        path = self.path_for(index)
        if not path.exists():
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                return ChunkAnalysis.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring corrupt cache entry {path.name}: {e}")
            return None

    def save(self, index: int, analysis: ChunkAnalysis) -> Path:
        """Write an analysis to the cache."""
        path = self.path_for(index)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(analysis.model_dump_json(indent=2))
        logger.debug(f"Cached analysis for chunk {index}")
        return path

    def load_all(self, indices: Iterable[int]) -> Dict[int, ChunkAnalysis]:
        """Load every available analysis among the given indices."""
        loaded = {}
        for index in indices:
            analysis = self.load(index)
            if analysis is not None:
                loaded[index] = analysis
        if loaded:
            logger.info(f"Loaded {len(loaded)} cached chunk analyses from {self.directory}")
        return loaded

    def cached_indices(self) -> List[int]:
        """Indices that have a cache file, readable or not."""
        indices = []
        for path in self.directory.glob("chunk_*_analysis.json"):
            middle = path.name[len("chunk_"):-len("_analysis.json")]
            if middle.isdigit():
                indices.append(int(middle))
        return sorted(indices)

    def clear(self) -> int:
        """Delete all cache files. Returns the number removed."""
        removed = 0
        for path in self.directory.glob("chunk_*_analysis.json"):
            path.unlink()
            removed += 1
        logger.info(f"Cleared {removed} cached analyses")
        return removed
