"""Minimal client for OpenAI-compatible chat completion endpoints."""

import json
import logging
import urllib.error
import urllib.request

from collections.abc import Callable
from typing import Any

from flowsense.exceptions import ClassificationUnavailable

logger = logging.getLogger(__name__)

Opener = Callable[..., Any]


class ChatCompletionClient:
    """
    Sends chat requests that must be answered with a JSON object.

    Every failure mode (missing key, network error, HTTP error, malformed
    reply) is raised as ClassificationUnavailable so callers handle one type.
    """

    def __init__(
        self,
        api_base: str,
        model: str,
        api_key: str | None,
        timeout: float,
        opener: Opener | None = None,
    ):
        """
        Initialize the client.

        Args:
            api_base: Base URL, e.g. https://api.openai.com/v1
            model: Model name sent with every request
            api_key: Bearer token; requests fail fast when None
            timeout: Socket timeout in seconds
            opener: Replacement for urllib.request.urlopen (tests)
        """
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._opener = opener or urllib.request.urlopen

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def complete_json(
        self, messages: list[dict[str, str]], temperature: float
    ) -> dict[str, Any]:
        """
        Request a completion and parse its content as a JSON object.

        Args:
            messages: Chat messages
            temperature: Sampling temperature

        Returns:
            Parsed JSON object from the first choice

        Raises:
            ClassificationUnavailable: On any failure
        """
        if not self.api_key:
            raise ClassificationUnavailable("Missing API key for classifier service")

        body = json.dumps(
            {
                "model": self.model,
                "messages": messages,
                "response_format": {"type": "json_object"},
                "temperature": temperature,
            }
        ).encode()

        req = urllib.request.Request(
            f"{self.api_base}/chat/completions", data=body, method="POST"
        )
        req.add_header("Content-Type", "application/json")
        req.add_header("Authorization", f"Bearer {self.api_key}")

        try:
            with self._opener(req, timeout=self.timeout) as response:
                data = json.loads(response.read().decode())
            content = data["choices"][0]["message"]["content"]
            result = json.loads(content)
        except urllib.error.HTTPError as e:
            raise ClassificationUnavailable(
                f"Classifier service returned HTTP {e.code}"
            ) from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise ClassificationUnavailable(
                f"Classifier service unreachable: {e}"
            ) from e
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise ClassificationUnavailable(
                f"Malformed classifier response: {e}"
            ) from e

        if not isinstance(result, dict):
            raise ClassificationUnavailable("Classifier response is not a JSON object")

        logger.debug(f"Classifier service answered with keys {sorted(result)}")
        return result
