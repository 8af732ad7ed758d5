"""
Plotline Configuration Management

Centralized configuration system with JSON loading and validation.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError, MissingConfigError, InvalidConfigError
from .constants import (
    DEFAULT_API_KEY_ENVS,
    DEFAULT_ENCODING,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODELS,
    DEFAULT_OVERLAP_TOKENS,
    DEEPSEEK_BASE_URL,
    LLMFunction,
    LLMProvider,
    MAX_DESCRIPTIONS_PER_NAME,
    MIN_CHUNK_CHARS,
)


@dataclass
class LLMConfig:
    """Configuration for a specific LLM provider."""
    provider: LLMProvider
    model: str
    api_key_env: str  # Environment variable name for API key
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 8192
    timeout: float = 120.0

    @classmethod
    def from_dict(cls, data: dict) -> 'LLMConfig':
        """Create LLMConfig from dictionary."""
        try:
            provider = LLMProvider(data['provider'])
        except (KeyError, ValueError) as e:
            raise InvalidConfigError(f"Invalid LLM provider: {data.get('provider')}") from e

        base_url = data.get('base_url')
        if base_url is None and provider == LLMProvider.DEEPSEEK:
            base_url = DEEPSEEK_BASE_URL

        return cls(
            provider=provider,
            model=data.get('model', DEFAULT_MODELS[provider]),
            api_key_env=data.get('api_key_env', DEFAULT_API_KEY_ENVS[provider]),
            base_url=base_url,
            temperature=data.get('temperature', 0.7),
            max_tokens=data.get('max_tokens', 8192),
            timeout=data.get('timeout', 120.0)
        )


@dataclass
class ChunkingConfig:
    """Token chunker settings."""
    max_tokens: int = DEFAULT_MAX_TOKENS
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS
    min_chunk_chars: int = MIN_CHUNK_CHARS
    encoding: str = DEFAULT_ENCODING


@dataclass
class PipelineConfig:
    """Pipeline stage settings."""
    discovery_concurrency: int = 10
    extraction_concurrency: int = 5
    design_concurrency: int = 5
    failure_policy: str = "isolate"  # "isolate" or "fail_fast"
    retry_delay: float = 2.0
    max_descriptions: int = MAX_DESCRIPTIONS_PER_NAME
    enable_correction: bool = True
    enable_dedup: bool = True
    enable_design: bool = False
    strict_merge: bool = False
    cache_dir: Optional[Path] = None


@dataclass
class PlotlineConfig:
    """Main configuration class for Plotline."""

    project_name: str = "Plotline"
    version: str = "0.3.0"

    # Session log files are written here when set
    logs_dir: Optional[Path] = None

    # LLM configurations
    llm_configs: Dict[str, LLMConfig] = field(default_factory=dict)
    function_mappings: Dict[LLMFunction, str] = field(default_factory=dict)

    # Sub-configurations
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    verbose_logging: bool = True

    def get_llm_for_function(self, function: Optional[LLMFunction]) -> LLMConfig:
        """Get the LLM configuration for a specific function."""
        name = self.function_mappings.get(function) if function else None
        if name:
            if name not in self.llm_configs:
                raise InvalidConfigError(f"Unknown LLM config: {name}")
            return self.llm_configs[name]
        if self.llm_configs:
            return next(iter(self.llm_configs.values()))
        label = function.value if function else "default"
        raise MissingConfigError(f"No LLM configuration for function: {label}")

    @classmethod
    def from_dict(cls, data: dict) -> 'PlotlineConfig':
        """Create PlotlineConfig from dictionary."""
        config = cls()

        config.project_name = data.get('project_name', config.project_name)
        config.version = data.get('version', config.version)
        config.verbose_logging = data.get('verbose_logging', config.verbose_logging)

        if 'paths' in data:
            logs_dir = data['paths'].get('logs_dir')
            config.logs_dir = Path(logs_dir) if logs_dir else None

        for name, llm_data in data.get('llm_providers', {}).items():
            config.llm_configs[name] = LLMConfig.from_dict(llm_data)

        for function_name, provider_name in data.get('function_mappings', {}).items():
            try:
                function = LLMFunction(function_name)
            except ValueError as e:
                raise InvalidConfigError(f"Unknown pipeline function: {function_name}") from e
            if provider_name not in config.llm_configs:
                raise InvalidConfigError(f"Unknown LLM config: {provider_name}")
            config.function_mappings[function] = provider_name

        if 'chunking' in data:
            chunk_data = data['chunking']
            config.chunking = ChunkingConfig(
                max_tokens=chunk_data.get('max_tokens', DEFAULT_MAX_TOKENS),
                overlap_tokens=chunk_data.get('overlap_tokens', DEFAULT_OVERLAP_TOKENS),
                min_chunk_chars=chunk_data.get('min_chunk_chars', MIN_CHUNK_CHARS),
                encoding=chunk_data.get('encoding', DEFAULT_ENCODING)
            )

        if 'pipeline' in data:
            pipe_data = data['pipeline']
            policy = pipe_data.get('failure_policy', 'isolate')
            if policy not in ("isolate", "fail_fast"):
                raise InvalidConfigError(f"Unknown failure policy: {policy}")
            cache_dir = pipe_data.get('cache_dir')
            config.pipeline = PipelineConfig(
                discovery_concurrency=pipe_data.get('discovery_concurrency', 10),
                extraction_concurrency=pipe_data.get('extraction_concurrency', 5),
                design_concurrency=pipe_data.get('design_concurrency', 5),
                failure_policy=policy,
                retry_delay=pipe_data.get('retry_delay', 2.0),
                max_descriptions=pipe_data.get('max_descriptions', MAX_DESCRIPTIONS_PER_NAME),
                enable_correction=pipe_data.get('enable_correction', True),
                enable_dedup=pipe_data.get('enable_dedup', True),
                enable_design=pipe_data.get('enable_design', False),
                strict_merge=pipe_data.get('strict_merge', False),
                cache_dir=Path(cache_dir) if cache_dir else None
            )

        config.validate()
        return config

    def validate(self) -> None:
        """Reject settings the pipeline cannot run with."""
        if self.chunking.max_tokens <= 0:
            raise InvalidConfigError("chunking.max_tokens must be positive")
        if not 0 <= self.chunking.overlap_tokens < self.chunking.max_tokens:
            raise InvalidConfigError("chunking.overlap_tokens must be in [0, max_tokens)")
        for name in ("discovery_concurrency", "extraction_concurrency", "design_concurrency"):
            if getattr(self.pipeline, name) < 1:
                raise InvalidConfigError(f"pipeline.{name} must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "project_name": self.project_name,
            "version": self.version,
            "verbose_logging": self.verbose_logging,
            "paths": {"logs_dir": str(self.logs_dir) if self.logs_dir else None},
            "llm_providers": {
                name: {
                    "provider": cfg.provider.value,
                    "model": cfg.model,
                    "api_key_env": cfg.api_key_env,
                    "base_url": cfg.base_url,
                    "temperature": cfg.temperature,
                    "max_tokens": cfg.max_tokens,
                    "timeout": cfg.timeout,
                }
                for name, cfg in self.llm_configs.items()
            },
            "function_mappings": {
                function.value: name for function, name in self.function_mappings.items()
            },
            "chunking": {
                "max_tokens": self.chunking.max_tokens,
                "overlap_tokens": self.chunking.overlap_tokens,
                "min_chunk_chars": self.chunking.min_chunk_chars,
                "encoding": self.chunking.encoding,
            },
            "pipeline": {
                "discovery_concurrency": self.pipeline.discovery_concurrency,
                "extraction_concurrency": self.pipeline.extraction_concurrency,
                "design_concurrency": self.pipeline.design_concurrency,
                "failure_policy": self.pipeline.failure_policy,
                "retry_delay": self.pipeline.retry_delay,
                "max_descriptions": self.pipeline.max_descriptions,
                "enable_correction": self.pipeline.enable_correction,
                "enable_dedup": self.pipeline.enable_dedup,
                "enable_design": self.pipeline.enable_design,
                "strict_merge": self.pipeline.strict_merge,
                "cache_dir": str(self.pipeline.cache_dir) if self.pipeline.cache_dir else None,
            },
        }


def load_config(config_path: Path = None) -> PlotlineConfig:
    """
    Load configuration from JSON file.

    Args:
        config_path: Path to configuration file. If None, uses default.

    Returns:
        Loaded PlotlineConfig instance
    """
    if config_path is None:
        config_path = Path("config/plotline_config.json")
    config_path = Path(config_path)

    if not config_path.exists():
        return PlotlineConfig()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"Invalid JSON in config file: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to load config: {e}")
    return PlotlineConfig.from_dict(data)


def save_config(config: PlotlineConfig, config_path: Path) -> None:
    """Write configuration to a JSON file."""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w', encoding='utf-8') as f:
        json.dump(config.to_dict(), f, indent=2)


_config: Optional[PlotlineConfig] = None


def get_config() -> PlotlineConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: PlotlineConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
