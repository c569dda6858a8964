"""
Matching Client Module

Transport to the AI matching service. A client takes a built MatchingContext
and returns the raw response text; it never interprets the response, which
is the Response Validator's job, and it never retries.

Example Usage:
    from course_reconciler.utils.matching_client import ClaudeMatchingClient

    client = ClaudeMatchingClient(correlation_id=session_id)
    raw = await client.match(context)
"""

import os
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog

from course_reconciler.agents.context_builder import MatchingContext
from course_reconciler.utils.errors import ExternalCallError

logger = structlog.get_logger(__name__)


def extract_json_from_markdown(response_text: str) -> str:
    """Extract JSON from a response, removing markdown code block markers if present.

    Args:
        response_text: Raw text response from the matching service

    Returns:
        Clean JSON string with code block markers removed
    """
    json_text = response_text.strip()

    if json_text.startswith("```json"):
        json_text = json_text[7:]
    elif json_text.startswith("```"):
        json_text = json_text[3:]

    if json_text.endswith("```"):
        json_text = json_text[:-3]

    return json_text.strip()


def classify_status(status_code: int) -> str:
    """Map an HTTP status to an ExternalCallError error_type."""
    if status_code == 429:
        return "rate_limit"
    if status_code in (401, 403):
        return "auth_error"
    if status_code in (400, 404, 413, 422):
        return "invalid_request"
    if status_code >= 500:
        return "server_error"
    return "other"


def classify_message(message: str) -> str:
    """Best-effort error_type for SDK failures that carry no status code."""
    lowered = message.lower()
    if "rate limit" in lowered or "429" in lowered or "overloaded" in lowered:
        return "rate_limit"
    if "auth" in lowered or "api key" in lowered or "401" in lowered:
        return "auth_error"
    if "timeout" in lowered or "timed out" in lowered:
        return "timeout"
    if "connection" in lowered or "network" in lowered:
        return "network"
    return "other"


class MatchingClient(ABC):
    """Abstract AI matching transport."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id
        self.logger = (
            logger.bind(correlation_id=correlation_id, phase="semantic")
            if correlation_id
            else logger.bind(phase="semantic")
        )

    @abstractmethod
    async def match(self, context: MatchingContext) -> str:
        """Send one matching request.

        Args:
            context: Built matching context

        Returns:
            Raw response text

        Raises:
            ExternalCallError: On network, timeout, non-2xx or empty response
        """


class ClaudeMatchingClient(MatchingClient):
    """Matching client backed by claude_agent_sdk.ClaudeSDKClient.

    One stateless turn with every tool disabled and no settings loaded, so
    the model sees only the rendered prompts.
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        model: Optional[str] = None,
    ):
        super().__init__(correlation_id=correlation_id)
        self.model = model

    async def match(self, context: MatchingContext) -> str:
        from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient

        prompt = context.user_prompt
        self.logger.debug("Matching call initiated", prompt_length=len(prompt))
        started = time.monotonic()

        options_kwargs: dict[str, Any] = {
            "max_turns": 1,
            "allowed_tools": [],
            "system_prompt": context.system_prompt,
            "setting_sources": None,
        }
        if self.model:
            options_kwargs["model"] = self.model
        options = ClaudeAgentOptions(**options_kwargs)

        response_text = ""
        try:
            async with ClaudeSDKClient(options=options) as client:
                await client.query(prompt)

                async for message in client.receive_response():
                    if hasattr(message, "content") and message.content:
                        for block in message.content:
                            if hasattr(block, "text"):
                                response_text += block.text
        except ExternalCallError:
            raise
        except Exception as e:
            error_type = classify_message(str(e))
            self.logger.error(
                "Matching call failed",
                error=str(e),
                error_type=error_type,
                prompt_length=len(prompt),
            )
            raise ExternalCallError(
                f"Matching service call failed: {e}", error_type=error_type
            ) from e

        if not response_text.strip():
            self.logger.error("Matching service returned empty response")
            raise ExternalCallError(
                "Matching service returned empty response", error_type="empty_response"
            )

        self.logger.debug(
            "Matching call succeeded",
            response_length=len(response_text),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return response_text.strip()


class HttpMatchingClient(MatchingClient):
    """Matching client that POSTs the serialized context to an HTTP endpoint.

    The endpoint receives the MatchingContext JSON and must answer 2xx with
    the response document as the body. Credentials are read from the
    ``MATCHING_API_KEY`` environment variable when not given.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        correlation_id: Optional[str] = None,
    ):
        """Initialize client.

        Args:
            endpoint: Matching endpoint URL
            api_key: Bearer token (defaults to MATCHING_API_KEY)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            correlation_id: Correlation ID for logging
        """
        super().__init__(correlation_id=correlation_id)
        self.endpoint = endpoint
        self.api_key = api_key if api_key is not None else os.getenv("MATCHING_API_KEY")
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.correlation_id:
            headers["X-Correlation-ID"] = self.correlation_id
        return headers

    async def match(self, context: MatchingContext) -> str:
        body = context.to_request_json()
        self.logger.debug(
            "Matching request sending", endpoint=self.endpoint, request_size=len(body)
        )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    self.endpoint, content=body, headers=self._headers()
                )
        except httpx.TimeoutException as e:
            self.logger.error("Matching request timed out", endpoint=self.endpoint)
            raise ExternalCallError(
                f"Matching request timed out: {e}", error_type="timeout"
            ) from e
        except httpx.HTTPError as e:
            self.logger.error(
                "Matching request failed", endpoint=self.endpoint, error=str(e)
            )
            raise ExternalCallError(
                f"Matching request failed: {e}", error_type="network"
            ) from e

        if not response.is_success:
            error_type = classify_status(response.status_code)
            self.logger.error(
                "Matching endpoint returned error status",
                status_code=response.status_code,
                error_type=error_type,
            )
            raise ExternalCallError(
                f"Matching endpoint returned HTTP {response.status_code}",
                error_type=error_type,
                status_code=response.status_code,
            )

        if not response.text.strip():
            raise ExternalCallError(
                "Matching endpoint returned empty response",
                error_type="empty_response",
                status_code=response.status_code,
            )

        self.logger.debug(
            "Matching request succeeded",
            status_code=response.status_code,
            response_size=len(response.content),
        )
        return response.text
