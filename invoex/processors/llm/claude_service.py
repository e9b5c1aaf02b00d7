"""
Claude (Anthropic) Vision Service

Sends a page image plus an instruction to a vision-capable Claude model and
returns the response text.
"""

import base64
import logging
import os
from typing import Any, Optional

import anthropic

from invoex.exceptions import VisionServiceError
from invoex.utils.images import detect_media_type

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-haiku-latest"


class ClaudeVisionService:
    """Claude vision client used by the vision extractor"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 8192,
        temperature: float = 0.1,
        timeout: float = 60.0,
        max_retries: int = 1,
        client: Optional[Any] = None
    ):
        """
        Args:
            api_key: Anthropic API key. Falls back to ANTHROPIC_API_KEY.
            model: Vision-capable model name
            timeout: Per-request timeout in seconds
            max_retries: SDK-level retries for connection errors and 429/5xx
            client: Pre-built ``anthropic.AsyncAnthropic`` (or compatible) client
        """
        if client is None:
            api_key = api_key or os.getenv('ANTHROPIC_API_KEY')
            if not api_key:
                raise ValueError("Anthropic API key is required (set ANTHROPIC_API_KEY)")
            client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=max_retries)

        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def describe_image(
        self,
        image: bytes,
        prompt: str,
        system_prompt: Optional[str] = None,
        media_type: Optional[str] = None
    ) -> str:
        """
        Ask the model about one image

        Returns:
            Concatenated text blocks of the response

        Raises:
            VisionServiceError: on API or transport failure
        """
        media_type = media_type or detect_media_type(image)
        request_kwargs = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": media_type,
                            "data": base64.b64encode(image).decode('ascii'),
                        },
                    },
                    {"type": "text", "text": prompt},
                ],
            }],
        }
        if system_prompt:
            request_kwargs["system"] = system_prompt

        try:
            response = await self.client.messages.create(**request_kwargs)
        except anthropic.APIError as e:
            logger.error(f"Claude vision request failed: {str(e)}")
            raise VisionServiceError(f"Claude vision request failed: {e}") from e

        text = ''.join(
            getattr(block, 'text', '') for block in response.content
            if getattr(block, 'type', 'text') == 'text'
        )
        logger.debug(f"Claude returned {len(text)} characters")
        return text
