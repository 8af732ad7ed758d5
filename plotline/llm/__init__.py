"""
Plotline LLM Module

Provider abstraction and the generation capability used by the pipeline.
"""

from .llm_config import (
    AnthropicProvider,
    BaseLLMProvider,
    GenerationCapability,
    LLMManager,
    OpenAIProvider,
    parse_json_from_text,
    schema_instructions,
)

__all__ = [
    'AnthropicProvider',
    'BaseLLMProvider',
    'GenerationCapability',
    'LLMManager',
    'OpenAIProvider',
    'parse_json_from_text',
    'schema_instructions',
]
