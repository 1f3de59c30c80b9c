"""OpenAI client wrapper for remedy."""

import os

import httpx
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessage, ChatCompletionMessageParam


class RemedyClientError(Exception):
    """Raised when the LLM API call fails."""


class RemedyClient:
    """OpenAI-compatible chat client used by the LLM generator and scorer."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        timeout: float = 360.0,
    ):
        self.current_model = model
        self.base_url = base_url or os.getenv(
            "REMEDY_BASE_URL", "https://api.openai.com/v1"
        )

        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
        )

    def set_model(self, model: str) -> None:
        """Update the current model."""
        self.current_model = model

    def get_current_model(self) -> str:
        """Get the current model."""
        return self.current_model

    async def chat(
        self,
        messages: list[ChatCompletionMessageParam],
        model: str | None = None,
        temperature: float = 0.2,
        json_mode: bool = False,
    ) -> ChatCompletionMessage:
        """Send a chat completion request."""
        try:
            request_payload = {
                "model": model or self.current_model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": 4000,
            }
            if json_mode:
                request_payload["response_format"] = {"type": "json_object"}

            response = await self.client.chat.completions.create(**request_payload)

            return response.choices[0].message

        except Exception as e:
            raise RemedyClientError(f"LLM API error: {str(e)}") from e

    async def close(self) -> None:
        await self.client.close()
