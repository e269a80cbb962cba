"""
Transport clients for the costly escalation stages.

The resolver only depends on the two contracts below; the concrete
classes wrap the Anthropic Messages API and an HTTP research service.
Failures are translated into the pipeline's error taxonomy:

- auth / connection problems -> StageUnavailable (stage is skipped)
- rate limits / server errors -> ExternalCallError
- unparseable responses -> StageError
"""

import asyncio
import json
from typing import Optional, Protocol

import anthropic
import requests
from anthropic import AsyncAnthropic
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.logging import logger
from crosswalk.matching.errors import ExternalCallError, StageError, StageUnavailable
from crosswalk.matching.types import CompetitorRecord, MatchCandidate


class AIClient(Protocol):
    """Anything that can answer a prompt with a JSON object."""

    async def complete(self, prompt: str, json_schema: dict) -> dict:
        ...


class WebResearchClient(Protocol):
    """Anything that can research a competitor product on the web."""

    async def research(
        self,
        competitor: CompetitorRecord,
        uncertain_matches: list[MatchCandidate],
    ) -> dict:
        ...


def parse_json_response(raw_text: str, stage: str = "ai_enhanced") -> dict:
    """Parse a model response, tolerating markdown code fences."""
    text = raw_text.strip()
    if text.startswith("```"):
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON response: {e}")
        logger.error(f"Raw response: {raw_text[:500]}")
        raise StageError(stage, f"invalid JSON response: {e}") from e

    if not isinstance(data, dict):
        raise StageError(stage, f"expected a JSON object, got {type(data).__name__}")
    return data


class AnthropicMatchClient:
    """
    AI client backed by Claude.

    Retries and timeouts are delegated to the Anthropic SDK.
    """

    STAGE = "ai_enhanced"
    SYSTEM_PROMPT = "You are an HVAC product expert. Always return valid JSON."

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 800,
        timeout: float = 30.0,
        max_retries: int = 3,
        client: Optional[AsyncAnthropic] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.client = client or AsyncAnthropic(
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
        )
        self.tokens_used = 0
        self.requests_made = 0

    async def complete(self, prompt: str, json_schema: dict) -> dict:
        content = (
            f"{prompt}\n\n"
            "Respond with JSON only, matching this schema:\n"
            f"{json.dumps(json_schema, indent=2)}"
        )

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=self.SYSTEM_PROMPT,
                messages=[{"role": "user", "content": content}],
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise StageUnavailable(self.STAGE, f"authentication failed: {e}") from e
        except anthropic.APIConnectionError as e:
            raise StageUnavailable(self.STAGE, f"connection failed: {e}") from e
        except anthropic.RateLimitError as e:
            raise ExternalCallError(self.STAGE, "rate limited", status_code=429) from e
        except anthropic.APIStatusError as e:
            # Other 4xx responses reject this prompt only
            if 400 <= e.status_code < 500:
                raise StageError(self.STAGE, f"request rejected ({e.status_code}): {e}") from e
            raise ExternalCallError(self.STAGE, str(e), status_code=e.status_code) from e

        self.requests_made += 1
        usage = getattr(response, "usage", None)
        if usage is not None:
            self.tokens_used += (usage.input_tokens or 0) + (usage.output_tokens or 0)

        text_blocks = [block.text for block in response.content if getattr(block, "text", None)]
        if not text_blocks:
            raise StageError(self.STAGE, "empty response")
        return parse_json_response(text_blocks[0], self.STAGE)


class HttpWebResearchClient:
    """
    Web research client for an HTTP research service.

    POSTs the competitor and the uncertain candidates as JSON and expects
    ``{enhanced_specs, needs_manual_review, source}`` back. The blocking
    request runs in a worker thread.
    """

    STAGE = "web_research"

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0):
        """
        Initialize the client.

        Args:
            base_url: Research endpoint URL
            api_key: Sent as a bearer token when set
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.requests_made = 0

        # Setup session with retry logic
        self.session = requests.Session()
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=frozenset(["GET", "POST"]),
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

    async def research(
        self,
        competitor: CompetitorRecord,
        uncertain_matches: list[MatchCandidate],
    ) -> dict:
        payload = {
            "competitor": competitor.to_dict(),
            "uncertain_matches": [
                {
                    "sku": candidate.catalog_record.sku,
                    "model": candidate.catalog_record.model,
                    "brand": candidate.catalog_record.brand,
                    "confidence": round(candidate.confidence, 3),
                }
                for candidate in uncertain_matches
            ],
        }
        return await asyncio.to_thread(self._post, payload)

    def _post(self, payload: dict) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        self.requests_made += 1
        try:
            response = self.session.post(
                self.base_url,
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RetryError as e:
            raise ExternalCallError(self.STAGE, f"retries exhausted: {e}") from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise StageUnavailable(self.STAGE, f"connection failed: {e}") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (401, 403):
                raise StageUnavailable(self.STAGE, f"authentication failed ({status})") from e
            if status is not None and 400 <= status < 500 and status != 429:
                raise StageError(self.STAGE, f"request rejected ({status})") from e
            raise ExternalCallError(self.STAGE, str(e), status_code=status) from e

        try:
            data = response.json()
        except ValueError as e:
            raise StageError(self.STAGE, f"invalid JSON response: {e}") from e
        if not isinstance(data, dict):
            raise StageError(self.STAGE, f"expected a JSON object, got {type(data).__name__}")
        return data
