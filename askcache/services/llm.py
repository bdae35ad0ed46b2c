import asyncio
from typing import Protocol

import requests

from ..config import Settings


class GenerationError(RuntimeError):
    """The generative model call failed; the message is shown to the caller."""


class AnswerProvider(Protocol):
    async def answer(self, question: str, use_retrieval: bool = False) -> str: ...


class ChatCompletionClient:
    """
    OpenAI-compatible chat completions client.

    With use_retrieval the search-capable model is used together with
    web_search_options so the answer reflects live web results.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        search_model: str = "gpt-4o-mini-search-preview",
        base_url: str = "https://api.openai.com/v1",
        system_prompt: str = "",
        max_tokens: int = 512,
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.model = model
        self.search_model = search_model
        self.base_url = base_url.rstrip("/")
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatCompletionClient":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            search_model=settings.OPENAI_SEARCH_MODEL,
            base_url=settings.OPENAI_BASE_URL,
            system_prompt=settings.SYSTEM_PROMPT,
            max_tokens=settings.MAX_TOKENS,
            timeout=settings.LLM_TIMEOUT,
        )

    def build_payload(self, question: str, use_retrieval: bool = False) -> dict:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": question})

        payload = {
            "model": self.search_model if use_retrieval else self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
        }
        if use_retrieval:
            payload["web_search_options"] = {}
        else:
            payload["temperature"] = 0.0
        return payload

    def generate(self, question: str, use_retrieval: bool = False) -> str:
        """
        Calls the chat completions endpoint and returns the answer text.
        """
        if not self.api_key:
            raise GenerationError("OPENAI_API_KEY is not set")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = self.build_payload(question, use_retrieval)

        try:
            url = f"{self.base_url}/chat/completions"
            r = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except requests.exceptions.Timeout:
            raise GenerationError("Generation request timed out") from None
        except requests.exceptions.RequestException as e:
            msg = str(e)
            if e.response is not None:
                msg += f" | Body: {e.response.text}"
            raise GenerationError(f"Generation request failed: {msg}") from e
        except ValueError as e:
            raise GenerationError(f"Generation response is not JSON: {e}") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if not isinstance(content, str):
                raise GenerationError(f"Unexpected generation response: {data}")
            if content.strip():
                return content.strip()
            raise GenerationError("Model returned an empty answer")

        raise GenerationError(f"Unexpected generation response: {data}")

    async def answer(self, question: str, use_retrieval: bool = False) -> str:
        return await asyncio.to_thread(self.generate, question, use_retrieval)
