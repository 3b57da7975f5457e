"""Provider construction from configuration."""

from __future__ import annotations

from agent_engine.ai.providers.base import LanguageModel
from agent_engine.config import ProviderConfig
from agent_engine.log import get_logger

logger = get_logger(__name__)


def create_provider(config: ProviderConfig) -> LanguageModel:
    """Create a language model for the configured backend."""
    if config.backend == "anthropic":
        from agent_engine.ai.providers.anthropic_provider import AnthropicModel

        model: LanguageModel = AnthropicModel(config)
    elif config.backend == "openai":
        from agent_engine.ai.providers.openai_provider import OpenAIModel

        model = OpenAIModel(config)
    elif config.backend == "gemini":
        from agent_engine.ai.providers.gemini_provider import GeminiModel

        model = GeminiModel(config)
    elif config.backend == "ollama":
        from agent_engine.ai.providers.ollama_provider import OllamaModel

        model = OllamaModel(config)
    else:
        raise ValueError(f"Unknown provider backend: {config.backend}")

    logger.info("provider_created", provider=model.provider_name, model=model.model)
    return model
