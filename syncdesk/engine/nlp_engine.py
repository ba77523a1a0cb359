import asyncio
import json
import logging
from typing import Any, Dict, Optional

from mistralai import Mistral

from syncdesk.config import Config
from syncdesk.engine.prompts import SYSTEM_PROMPT

logger = logging.getLogger(__name__)


class MistralEngine:
    """
    Mistral chat-completion client used as a text-in / JSON-out black box:
    - Official Mistral SDK
    - Native JSON mode enforcement
    - Blocking SDK call moved to a worker thread under a timeout
    """

    def __init__(self, api_key: Optional[str] = None, client: Optional[Any] = None):
        self.api_key = api_key if api_key is not None else Config.MISTRAL_API_KEY
        self.client = client

        if self.client is None and self.api_key:
            self.client = Mistral(api_key=self.api_key)

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def generate_json_async(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 512,
        temperature: float = 0.3,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Generate JSON output using Mistral's native JSON mode.

        Raises:
            ValueError: No API key configured
            TimeoutError: The call exceeded `timeout`
            RuntimeError: Provider failure or a response that is not a JSON object
        """
        if not self.client:
            raise ValueError("Mistral API key not configured. Set MISTRAL_API_KEY environment variable.")

        model = model or Config.AI_MODEL
        timeout = timeout if timeout is not None else Config.AI_TIMEOUT_SECONDS

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self.client.chat.complete,
                    model=model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    response_format={"type": "json_object"},
                    max_tokens=max_tokens,
                    temperature=temperature,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"Mistral API call timed out after {timeout}s")
        except Exception as e:
            raise RuntimeError(f"Mistral API error: {str(e)}") from e

        try:
            content = response.choices[0].message.content
            data = json.loads(content)
        except (AttributeError, IndexError, TypeError, json.JSONDecodeError) as e:
            raise RuntimeError(f"Failed to parse Mistral JSON response: {e}") from e

        if not isinstance(data, dict):
            raise RuntimeError("Mistral JSON response is not an object")
        return data
