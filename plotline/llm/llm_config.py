"""
Plotline LLM Manager

Manages LLM provider connections and API calls, and turns free-form replies
into validated pydantic objects for the structured pipeline stages.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Protocol, Type, TypeVar
import asyncio
import json
import time

from pydantic import BaseModel, ValidationError

from plotline.core.config import LLMConfig, PlotlineConfig, get_config
from plotline.core.constants import LLMProvider, LLMFunction
from plotline.core.exceptions import GenerationFailure, LLMProviderError
from plotline.core.logging_config import get_logger
from plotline.core.env_loader import get_api_key

logger = get_logger("llm.manager")

ModelT = TypeVar("ModelT", bound=BaseModel)


class GenerationCapability(Protocol):
    """What the pipeline stages need from a language model."""

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        function: Optional[LLMFunction] = None,
        temperature: Optional[float] = None
    ) -> str:
        ...

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[ModelT],
        system_prompt: str = "",
        function: Optional[LLMFunction] = None,
        temperature: Optional[float] = None
    ) -> ModelT:
        ...


def parse_json_from_text(text: str) -> Any:
    """
    Parse JSON from a model reply, handling markdown code blocks.

    Raises:
        GenerationFailure: If no JSON can be decoded
    """
    text = (text or "").strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Replies sometimes wrap the object in prose
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise GenerationFailure("malformed JSON in reply", {"error": str(e)}) from e
    raise GenerationFailure("reply contains no JSON object", {"reply": text[:200]})


def schema_instructions(schema: Type[BaseModel]) -> str:
    """System prompt suffix asking for JSON matching a pydantic schema."""
    return (
        "Respond with a single JSON object and nothing else. "
        "It must validate against this JSON schema:\n"
        f"{json.dumps(schema.model_json_schema(), ensure_ascii=False)}"
    )


class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self._api_key = get_api_key(config.api_key_env)
        if not self._api_key:
            logger.warning(f"API key not found: {config.api_key_env}")

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = None,
        max_tokens: int = None
    ) -> str:
        """Generate a response from the LLM."""
        pass

    @property
    def is_available(self) -> bool:
        """Check if the provider is available."""
        return self._api_key is not None


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Claude provider."""

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = None,
        max_tokens: int = None
    ) -> str:
        try:
            import anthropic

            client = anthropic.AsyncAnthropic(api_key=self._api_key)

            message = await client.messages.create(
                model=self.config.model,
                max_tokens=max_tokens or self.config.max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature if temperature is not None else self.config.temperature
            )

            return message.content[0].text

        except Exception as e:
            raise LLMProviderError("anthropic", str(e)) from e


class OpenAIProvider(BaseLLMProvider):
    """OpenAI GPT provider. Also serves OpenAI-compatible APIs such as DeepSeek."""

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = None,
        max_tokens: int = None
    ) -> str:
        try:
            import openai

            client = openai.AsyncOpenAI(api_key=self._api_key, base_url=self.config.base_url)

            messages = []
            if system_prompt:
                messages.append({"role": "system", "content": system_prompt})
            messages.append({"role": "user", "content": prompt})

            response = await client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                max_tokens=max_tokens or self.config.max_tokens,
                temperature=temperature if temperature is not None else self.config.temperature
            )

            return response.choices[0].message.content or ""

        except Exception as e:
            raise LLMProviderError(self.config.provider.value, str(e)) from e


class LLMManager:
    """
    Routes generation calls to configured providers.

    Each pipeline function (discovery, extraction, ...) can be mapped to its
    own provider config; unmapped functions use the first available provider.
    Every call is bounded by the provider's timeout.
    """

    PROVIDER_CLASSES = {
        LLMProvider.ANTHROPIC: AnthropicProvider,
        LLMProvider.OPENAI: OpenAIProvider,
        LLMProvider.DEEPSEEK: OpenAIProvider,
    }

    def __init__(self, config: PlotlineConfig = None):
        """
        Initialize the LLM manager.

        Args:
            config: Plotline configuration
        """
        self.config = config or get_config()
        self._providers: Dict[str, BaseLLMProvider] = {}

        # Stats tracking
        self._call_count = 0
        self._failure_count = 0
        self._total_time = 0.0

        self._initialize_providers()

    def _initialize_providers(self) -> None:
        """Initialize all configured providers."""
        for name, llm_config in self.config.llm_configs.items():
            provider_class = self.PROVIDER_CLASSES.get(llm_config.provider)
            if provider_class:
                self._providers[name] = provider_class(llm_config)
                logger.debug(f"Initialized provider: {name}")

    def register_provider(self, name: str, provider: BaseLLMProvider) -> None:
        """Add or replace a provider under a config name."""
        self._providers[name] = provider

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        function: LLMFunction = None,
        temperature: float = None,
        max_tokens: int = None
    ) -> str:
        """
        Generate a response using the appropriate LLM.

        Args:
            prompt: User prompt
            system_prompt: System prompt
            function: Function type for routing
            temperature: Override temperature
            max_tokens: Override max tokens

        Returns:
            Generated response text

        Raises:
            GenerationFailure: On provider error or timeout
        """
        start_time = time.time()
        self._call_count += 1

        provider = self._get_provider_for_function(function)
        if not provider:
            raise GenerationFailure("no available LLM provider")

        logger.debug(f"Using provider for {function}: {provider.config.model}")
        logger.debug(f"Prompt ({len(prompt)} chars): {prompt[:200]}")

        try:
            response = await asyncio.wait_for(
                provider.generate(
                    prompt=prompt,
                    system_prompt=system_prompt,
                    temperature=temperature,
                    max_tokens=max_tokens
                ),
                timeout=provider.config.timeout
            )
        except asyncio.TimeoutError as e:
            self._failure_count += 1
            raise GenerationFailure(
                f"timed out after {provider.config.timeout}s",
                {"function": function.value if function else None}
            ) from e
        except GenerationFailure:
            self._failure_count += 1
            raise
        finally:
            self._total_time += time.time() - start_time

        return response

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[ModelT],
        system_prompt: str = "",
        function: LLMFunction = None,
        temperature: float = None
    ) -> ModelT:
        """
        Generate a reply and validate it against a pydantic schema.

        Raises:
            GenerationFailure: On provider error, timeout, malformed JSON or
                schema violation
        """
        full_system = f"{system_prompt}\n\n{schema_instructions(schema)}".strip()
        text = await self.generate(
            prompt,
            system_prompt=full_system,
            function=function,
            temperature=temperature
        )

        data = parse_json_from_text(text)
        try:
            return schema.model_validate(data)
        except ValidationError as e:
            self._failure_count += 1
            raise GenerationFailure(
                f"reply does not match {schema.__name__}",
                {"errors": e.error_count()}
            ) from e

    def get_stats(self) -> Dict[str, Any]:
        """Get LLM manager statistics."""
        return {
            "total_calls": self._call_count,
            "failures": self._failure_count,
            "total_time": f"{self._total_time:.2f}s",
            "avg_time_per_call": f"{(self._total_time / self._call_count):.3f}s" if self._call_count > 0 else "0s",
        }

    def _get_provider_for_function(
        self,
        function: LLMFunction = None
    ) -> Optional[BaseLLMProvider]:
        """Get the appropriate provider for a function."""
        if function and function in self.config.function_mappings:
            name = self.config.function_mappings[function]
            provider = self._providers.get(name)
            if provider and provider.is_available:
                return provider
            logger.warning(f"Mapped provider '{name}' for {function.value} unavailable, falling back")

        for provider in self._providers.values():
            if provider.is_available:
                return provider

        return None
