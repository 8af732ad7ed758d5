"""
Pytest Configuration and Fixtures

Shared fixtures for all tests: a deterministic word tokenizer and a stub
generation capability whose replies are keyed by pipeline function.
"""

import asyncio
import json
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from plotline.core.constants import LLMFunction
from plotline.core.exceptions import GenerationFailure
from plotline.models.story import ChunkAnalysis
from plotline.pipelines.concurrency_manager import ConcurrencyManager


class WordTokenizer:
    """One token per word, trailing whitespace included. Lossless."""

    _PIECES = re.compile(r"^\s+|\S+\s*")

    def __init__(self):
        self._ids: Dict[str, int] = {}
        self._pieces: List[str] = []

    def encode(self, text: str) -> List[int]:
        tokens = []
        for piece in self._PIECES.findall(text):
            if piece not in self._ids:
                self._ids[piece] = len(self._pieces)
                self._pieces.append(piece)
            tokens.append(self._ids[piece])
        return tokens

    def decode(self, tokens: List[int]) -> str:
        return "".join(self._pieces[t] for t in tokens)


@dataclass
class StubCall:
    """One recorded call to the stub."""
    function: Optional[LLMFunction]
    prompt: str
    system_prompt: str
    temperature: Optional[float]
    schema: Any = None


Handler = Callable[[str], Any]


class StubLLM:
    """
    Deterministic generation capability for tests.

    Handlers are keyed by LLMFunction and receive the prompt. A handler may
    return a model instance, a dict to validate against the requested
    schema, a string (for free-form calls) or an exception to raise.
    """

    def __init__(self, handlers: Dict[LLMFunction, Any] = None, delay: Any = 0.0):
        self.handlers = dict(handlers or {})
        self.delay = delay
        self.calls: List[StubCall] = []

    async def _pause(self, prompt: str) -> None:
        delay = self.delay(prompt) if callable(self.delay) else self.delay
        await asyncio.sleep(delay)

    def _reply(self, function: Optional[LLMFunction], prompt: str) -> Any:
        if function not in self.handlers:
            raise GenerationFailure(f"no stub reply for {function}")
        handler = self.handlers[function]
        value = handler(prompt) if callable(handler) else handler
        if isinstance(value, BaseException):
            raise value
        return value

    async def generate(self, prompt, system_prompt="", function=None, temperature=None):
        self.calls.append(StubCall(function, prompt, system_prompt, temperature))
        await self._pause(prompt)
        return self._reply(function, prompt)

    async def generate_structured(self, prompt, schema, system_prompt="", function=None, temperature=None):
        self.calls.append(StubCall(function, prompt, system_prompt, temperature, schema))
        await self._pause(prompt)
        value = self._reply(function, prompt)
        return value if isinstance(value, schema) else schema.model_validate(value)

    def calls_for(self, function: LLMFunction) -> List[StubCall]:
        return [c for c in self.calls if c.function == function]


def echo_correction(prompt: str) -> ChunkAnalysis:
    """Correction handler that returns the initial analysis unchanged."""
    match = re.search(r"<initial_analysis>\n(.*)\n</initial_analysis>", prompt, re.S)
    return ChunkAnalysis.model_validate(json.loads(match.group(1)))


def fragment_of(prompt: str) -> str:
    """Chunk text embedded in a discovery or extraction prompt."""
    match = re.search(r"Fragment \d+:?\n+(.*?)(?:\n\nExtract the fragment|\Z)", prompt, re.S)
    return match.group(1) if match else ""


@pytest.fixture(autouse=True)
def fresh_concurrency_manager():
    """Keep the global concurrency manager's stats per test."""
    ConcurrencyManager.reset()
    yield
    ConcurrencyManager.reset()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def word_tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture
def make_llm():
    """Factory for StubLLM instances."""
    return StubLLM


@pytest.fixture
def echo():
    """Correction handler that keeps the initial analysis."""
    return echo_correction


@pytest.fixture
def fragment():
    """Extracts the chunk text from a stage prompt."""
    return fragment_of


@pytest.fixture
def sample_config() -> Dict[str, Any]:
    """Sample configuration for testing."""
    return {
        "project_name": "Test Novel",
        "llm_providers": {
            "deepseek": {
                "provider": "deepseek",
                "model": "deepseek-chat",
                "api_key_env": "DEEPSEEK_API_KEY"
            },
            "claude": {
                "provider": "anthropic",
                "model": "claude-sonnet-4-5-20250929",
                "timeout": 60
            }
        },
        "function_mappings": {
            "extraction": "claude",
            "discovery": "deepseek"
        },
        "chunking": {
            "max_tokens": 1000,
            "overlap_tokens": 50
        },
        "pipeline": {
            "extraction_concurrency": 3,
            "failure_policy": "fail_fast",
            "enable_design": True
        }
    }
