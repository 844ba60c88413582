"""Client for an OpenAI-compatible chat completions gateway with image input."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

logger = structlog.get_logger("grailscan.vision.gateway")


class AIGatewayError(Exception):
    """The gateway call failed (transport error, non-2xx or unusable body)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def as_data_url(image: str) -> str:
    """Wrap a bare base64 JPEG in a data URL; data URLs pass through."""
    if image.startswith("data:"):
        return image
    return f"data:image/jpeg;base64,{image}"


class AIGateway:
    """Posts a system prompt, a user prompt and one image; returns the reply text."""

    def __init__(
        self,
        url: str,
        api_key: str,
        model: str,
        max_tokens: int = 500,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    async def __aenter__(self) -> AIGateway:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def _payload(self, system_prompt: str, user_prompt: str, image: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": user_prompt},
                        {"type": "image_url", "image_url": {"url": as_data_url(image)}},
                    ],
                },
            ],
            "max_tokens": self.max_tokens,
        }

    async def complete(self, system_prompt: str, user_prompt: str, image: str) -> str:
        """Run one chat completion.

        Returns:
            Content of the first choice's message (empty string when absent)

        Raises:
            AIGatewayError: On transport errors, non-2xx responses or a non-JSON body
        """
        try:
            response = await self.client.post(
                self.url,
                json=self._payload(system_prompt, user_prompt, image),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise AIGatewayError(f"AI gateway request failed: {e}") from e

        if response.is_error:
            if response.status_code == 429:
                logger.warning("Rate limited by AI gateway")
            raise AIGatewayError(
                f"AI gateway error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AIGatewayError("AI gateway returned invalid JSON") from e

        if not isinstance(data, dict):
            raise AIGatewayError("AI gateway returned an unexpected body")

        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""
