"""
Text-generation clients for the query pipeline.

OpenAI chat completions by default; a local Ollama model when
LLM_PROVIDER=ollama (or USE_LOCAL_LLM=true).
"""
from typing import List, Optional
import time

import ollama
from openai import OpenAI

from ci_rag.config import Settings, get_settings
from ci_rag.errors import UpstreamError
from ci_rag.logging_config import get_logger

logger = get_logger(__name__)


class OpenAIChatClient:
    """Chat completions via the OpenAI API. No client-side retries."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        self.model = model
        self.client = OpenAI(api_key=api_key, max_retries=0)

    def chat(self, messages: List[dict], temperature: float, max_tokens: int, timeout: Optional[float] = None) -> str:
        llm_start = time.time()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout
            )
            content = response.choices[0].message.content
        except Exception as e:
            raise UpstreamError(f"OpenAI chat completion failed: {e}") from e

        llm_time = (time.time() - llm_start) * 1000
        logger.debug(f"  LLM call time ({self.model}): {llm_time:.0f}ms")
        return content or ""


class OllamaChatClient:
    """Chat via a local Ollama server."""

    def __init__(self, base_url: str, model: str = "llama3.1:8b"):
        self.base_url = base_url
        self.model = model

    def chat(self, messages: List[dict], temperature: float, max_tokens: int, timeout: Optional[float] = None) -> str:
        llm_start = time.time()
        try:
            # Timeout is fixed per client, so build one per call
            client = ollama.Client(host=self.base_url, timeout=timeout)
            response = client.chat(
                model=self.model,
                messages=messages,
                options={'temperature': temperature, 'num_predict': max_tokens},
                keep_alive=-1
            )
            content = response['message']['content']
        except Exception as e:
            raise UpstreamError(f"Ollama chat failed: {e}") from e

        llm_time = (time.time() - llm_start) * 1000
        logger.debug(f"  LLM call time ({self.model}): {llm_time:.0f}ms")
        return content or ""


def get_llm_client(settings: Settings = None):
    """Build the text-generation client selected by configuration."""
    settings = settings or get_settings()

    if settings.llm_provider == "ollama":
        logger.info(f"Using Ollama model: {settings.ollama_model}")
        return OllamaChatClient(settings.ollama_base_url, settings.ollama_model)

    if settings.llm_provider == "openai":
        logger.info(f"Using OpenAI model: {settings.openai_chat_model}")
        return OpenAIChatClient(settings.openai_api_key, settings.openai_chat_model)

    raise ValueError(f"Unknown LLM_PROVIDER: {settings.llm_provider}")
