"""
Plotline Core Module

Contains core systems including configuration, constants, exceptions, and logging.
"""

from .config import (
    ChunkingConfig,
    LLMConfig,
    PipelineConfig,
    PlotlineConfig,
    get_config,
    load_config,
    save_config,
    set_config,
)
from .constants import *
from .exceptions import *
from .logging_config import LogLevel, create_session_log, get_logger, setup_logging
from .retry import RetryConfig, fixed_delay_config, retry_async_call

__all__ = [
    'PlotlineConfig',
    'ChunkingConfig',
    'PipelineConfig',
    'LLMConfig',
    'load_config',
    'save_config',
    'get_config',
    'set_config',
    'setup_logging',
    'LogLevel',
    'create_session_log',
    'get_logger',
    'RetryConfig',
    'fixed_delay_config',
    'retry_async_call',
]
