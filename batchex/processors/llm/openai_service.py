"""
Vision Model Client

Calls an OpenAI-compatible chat completions endpoint with a prompt and a list
of images, returning the message content together with token usage.
"""

import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

import openai
from openai import AsyncOpenAI

from batchex.exceptions import TransientJobError, PermanentJobError

logger = logging.getLogger(__name__)


def to_data_url(data: bytes, mime_type: str = 'image/jpeg') -> str:
    """Encode image bytes as a base64 data URL"""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def normalize_base_url(endpoint_url: str) -> str:
    """Turn a full chat completions URL into the base URL the SDK expects"""
    url = endpoint_url.rstrip('/')
    for suffix in ('/chat/completions', '/completions'):
        if url.endswith(suffix):
            url = url[:-len(suffix)]
    return url


@dataclass
class ImageInput:
    """One image sent to the model, with optional OCR text"""
    data_url: str
    extracted_text: Optional[str] = None


@dataclass
class ModelResponse:
    """Content and usage of one chat completion"""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    duration_ms: float = 0.0
    raw_usage: Optional[Dict[str, Any]] = field(default=None, repr=False)


class VisionModelClient:
    """Reusable OpenAI-compatible vision client"""

    def __init__(
        self,
        endpoint_url: str,
        api_key: Optional[str],
        model: str,
        timeout: float = 60.0,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ):
        """
        Initialize the client

        Args:
            endpoint_url: Chat completions URL or API base URL
            api_key: Bearer token for the endpoint
            model: Model name sent with each request
            timeout: Request timeout in seconds
            temperature: Optional sampling temperature
            max_tokens: Optional completion token cap
        """
        if not endpoint_url:
            raise PermanentJobError("No model endpoint configured")
        if not model:
            raise PermanentJobError("No model name configured")

        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        # Retries are owned by the job queue
        self.client = AsyncOpenAI(
            base_url=normalize_base_url(endpoint_url),
            api_key=api_key or 'not-needed',
            timeout=timeout,
            max_retries=0
        )

    @staticmethod
    def build_content(prompt: str, images: List[ImageInput]) -> List[Dict[str, Any]]:
        """Build the multimodal message content: prompt, then each image with its OCR text"""
        content: List[Dict[str, Any]] = [{'type': 'text', 'text': prompt}]
        for index, image in enumerate(images):
            content.append({'type': 'image_url', 'image_url': {'url': image.data_url}})
            if image.extracted_text and image.extracted_text.strip():
                content.append({
                    'type': 'text',
                    'text': f"[Extracted text from page {index + 1}]: {image.extracted_text}"
                })
        return content

    async def complete(self, prompt: str, images: List[ImageInput]) -> ModelResponse:
        """
        Send one chat completion request

        Raises:
            TransientJobError: timeouts, connection failures and upstream errors
            PermanentJobError: the endpoint rejected our credentials
        """
        kwargs: Dict[str, Any] = {}
        if self.temperature is not None:
            kwargs['temperature'] = self.temperature
        if self.max_tokens:
            kwargs['max_tokens'] = self.max_tokens

        started = time.monotonic()
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{'role': 'user', 'content': self.build_content(prompt, images)}],
                **kwargs
            )
        except openai.APITimeoutError:
            raise TransientJobError(f"Model request timeout after {self.timeout}s")
        except openai.APIConnectionError as e:
            raise TransientJobError(f"Model API connection error: {e}")
        except openai.AuthenticationError as e:
            raise PermanentJobError(f"Model API rejected credentials: {e}")
        except openai.APIStatusError as e:
            raise TransientJobError(f"Model API request failed: {e.status_code} {e.message}")

        duration_ms = (time.monotonic() - started) * 1000
        if not response.choices:
            raise TransientJobError("Model returned no choices")

        usage = response.usage
        result = ModelResponse(
            content=response.choices[0].message.content or '',
            model=response.model or self.model,
            input_tokens=(usage.prompt_tokens or 0) if usage else 0,
            output_tokens=(usage.completion_tokens or 0) if usage else 0,
            total_tokens=(usage.total_tokens or 0) if usage else 0,
            duration_ms=duration_ms,
            raw_usage=usage.model_dump() if usage else None
        )
        logger.info(
            f"Model call to {self.model} finished in {duration_ms:.0f}ms "
            f"({result.input_tokens} in / {result.output_tokens} out tokens)"
        )
        return result

    async def close(self) -> None:
        await self.client.close()
