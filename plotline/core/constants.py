"""
Plotline Constants

Global constants used throughout the Plotline pipeline.
"""

from enum import Enum

# =============================================================================
# VERSION INFO
# =============================================================================
VERSION = "0.3.0"
PROJECT_NAME = "Plotline"

# =============================================================================
# LLM ROUTING
# =============================================================================

class LLMProvider(Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    ANTHROPIC = "anthropic"


class LLMFunction(Enum):
    """Pipeline functions that can be routed to different LLM configs."""
    DISCOVERY = "discovery"
    RESOLUTION = "resolution"
    EXTRACTION = "extraction"
    CORRECTION = "correction"
    CONSOLIDATION = "consolidation"
    DESIGN = "design"


DEFAULT_MODELS = {
    LLMProvider.OPENAI: "gpt-4o",
    LLMProvider.DEEPSEEK: "deepseek-chat",
    LLMProvider.ANTHROPIC: "claude-sonnet-4-5-20250929",
}

DEFAULT_API_KEY_ENVS = {
    LLMProvider.OPENAI: "OPENAI_API_KEY",
    LLMProvider.DEEPSEEK: "DEEPSEEK_API_KEY",
    LLMProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
}

DEEPSEEK_BASE_URL = "https://api.deepseek.com"

# =============================================================================
# CHUNKING
# =============================================================================

DEFAULT_ENCODING = "cl100k_base"
DEFAULT_MAX_TOKENS = 20000
DEFAULT_OVERLAP_TOKENS = 500
MIN_CHUNK_CHARS = 20

# Sentence enders for splitting oversized paragraphs (CJK and Latin)
SENTENCE_SPLIT_PATTERN = r'([。！？；!?.;]+|\n)'

# =============================================================================
# IDS
# =============================================================================

EVENT_ID_PREFIX = "E"
EVENT_ID_WIDTH = 3
ENTITY_ID_PREFIX = "CHAR_"
ENTITY_ID_WIDTH = 3

# Distinct descriptions kept per discovered name when building the resolution prompt
MAX_DESCRIPTIONS_PER_NAME = 5

# =============================================================================
# PROGRESS STAGE NAMES
# =============================================================================

STAGE_DISCOVERY = "Discovery"
STAGE_RESOLUTION = "Entity Resolution"
STAGE_EXTRACTION = "Extraction"
STAGE_CONSOLIDATION = "Consolidation"
STAGE_DESIGN = "Design"
