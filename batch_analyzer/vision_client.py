"""
Vision collaborator adapters.

Each adapter takes raw image bytes plus their declared media type and returns
the model's structured answer ``{"type", "confidence", "data"}`` as a dict.
Two backends are supported:

- ``openai``: any OpenAI-compatible chat completions API (OpenAI, OpenRouter,
  self-hosted gateways), the image travels as a base64 data URL
- ``legacy``: a self-hosted endpoint taking the prompt and the image file as
  multipart form data

Transport failures raise CollaboratorError; answers that are not a JSON
object raise UpstreamFormatError.
"""
import asyncio
import base64
import json
import logging
import re
import time
from typing import Any, Dict, Optional

import aiohttp
import openai
from openai import AsyncOpenAI

from .exceptions import CollaboratorError, UpstreamFormatError

logger = logging.getLogger(__name__)

DEFAULT_VISION_PROMPT = """
You analyse a single photo and decide whether it shows (1) a purchase receipt or
ticket, or (2) a vehicle, usually with its licence plate. Extract everything that
is legible. Reply with one JSON object only, no markdown and no commentary, using
exactly one of the schemas below.

Receipt / ticket:
{
  "type": "ticket",
  "confidence": <0-1>,
  "data": {
    "merchant": {"name": <string|null>, "address": <string|null>, "vat_number": <string|null>},
    "ticket": {"date": <"YYYY-MM-DD"|null>, "time": <"HH:MM"|null>, "currency": <ISO 4217 code|null>,
               "currency_inferred": <true when the currency was not printed and was inferred from the merchant location>},
    "items": [{"name": <string>, "quantity": <number>, "unit_price": <number>, "total_price": <number>,
               "category": <string>, "confidence": <0-1>}],
    "totals": {"subtotal": <number|null>, "tax": <sum of tax_lines amounts|null>,
               "tax_lines": [{"name": <e.g. "VAT 21%">, "rate": <number|null>, "base": <number|null>, "amount": <number|null>}],
               "total": <final amount paid, taxes included|null>},
    "raw_text": <all text read from the receipt>,
    "warnings": [<string>]
  }
}

Vehicle / licence plate:
{
  "type": "vehicle",
  "confidence": <0-1>,
  "data": {
    "vehicle": {"license_plate": <uppercase, no spaces|null>, "plate_visible": <true|false>,
                "plate_unreadable_reason": <"occluded"|"blurry"|"angle"|"damaged"|"not_present"|null>,
                "country": <string|null>, "vehicle_type": <"car"|"truck"|"motorcycle"|"bus"|"van"|"other"|null>,
                "brand": <string|null>, "model": <string|null>, "color": <string|null>},
    "detection": {"bounding_box": {"x": <0-1>, "y": <0-1>, "width": <0-1>, "height": <0-1>}},
    "raw_text": <text read from the plate or vehicle>,
    "warnings": [<string>]
  }
}

When a vehicle is visible but its plate cannot be read, set "license_plate" to null,
"plate_visible" to false, pick a "plate_unreadable_reason" and explain it in "warnings".

Anything else:
{"type": "unknown", "confidence": 0, "data": {"warnings": ["Image does not match any supported type"]}}
""".strip()

# OpenAI SDK errors worth another attempt
_RETRIABLE_OPENAI_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def parse_analysis_text(response_text: Optional[str]) -> Dict[str, Any]:
    """Parse the model's answer into a dict.

    Accepts bare JSON, JSON fenced in markdown, or a JSON object embedded in
    surrounding prose. Raises UpstreamFormatError otherwise.
    """
    if not response_text or not response_text.strip():
        raise UpstreamFormatError("Model returned an empty response")

    parsed = None
    try:
        parsed = json.loads(response_text)
    except json.JSONDecodeError:
        # 1) fenced JSON (```json or ```)
        m = re.search(
            r"```(?:json)?\s*(\{.*\})\s*```", response_text, re.DOTALL | re.IGNORECASE)
        # 2) first inline JSON object
        if m is None:
            m = re.search(r"(\{.*\})", response_text, re.DOTALL)
        if m is not None:
            try:
                parsed = json.loads(m.group(1))
            except json.JSONDecodeError:
                parsed = None

    if not isinstance(parsed, dict):
        logger.error(f"Failed to parse model JSON response: {response_text[:500]}")
        raise UpstreamFormatError(
            f"Model response is not a JSON object: {response_text[:200]}")

    return parsed


class BaseVisionClient:
    """Retry loop and response parsing shared by the backends"""

    backend_name = "vision"

    def __init__(self, prompt: Optional[str] = None, retry_attempts: int = 2,
                 retry_delay: float = 1.0):
        # Resolved once; a prompt override is configuration, not call-time state
        self.prompt = prompt or DEFAULT_VISION_PROMPT
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay

    async def analyze(self, image_bytes: bytes, media_type: str) -> Dict[str, Any]:
        """Analyse one image and return the model's parsed answer"""
        last_exception: Optional[CollaboratorError] = None
        response_text = None
        request_start_time = time.time()

        for attempt in range(self.retry_attempts):
            try:
                response_text = await self._request_completion(image_bytes, media_type)
                logger.debug(
                    f"{self.backend_name} request successful ({time.time() - request_start_time:.2f}s)")
                last_exception = None
                break

            except CollaboratorError as e:
                last_exception = e
                logger.warning(
                    f"{self.backend_name} error (attempt {attempt + 1}/{self.retry_attempts}): {e}")
                if e.retriable and attempt < self.retry_attempts - 1:
                    await asyncio.sleep(min(30, self.retry_delay * (2 ** attempt)))
                    continue
                break

        if last_exception is not None:
            raise last_exception

        return parse_analysis_text(response_text)

    async def _request_completion(self, image_bytes: bytes, media_type: str) -> str:
        raise NotImplementedError


class OpenAIVisionClient(BaseVisionClient):
    """Chat completions client for OpenAI-compatible APIs"""

    backend_name = "OpenAI"

    def __init__(self, api_key: str, model: str = "gpt-4o", base_url: Optional[str] = None,
                 detail: str = "high", max_tokens: int = 1500, request_timeout: float = 90.0,
                 client: Optional[Any] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.detail = detail
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout

        # Injected clients are shared; otherwise one client is opened per call
        self.openai_client = client
        if client is None and api_key:
            logger.info(f"OpenAI backend configured (model={model}, base_url={base_url or 'default'})")

    def _new_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.request_timeout,
            # retries are handled by analyze()
            max_retries=0,
        )

    def build_messages(self, image_bytes: bytes, media_type: str):
        encoded = base64.b64encode(image_bytes).decode('ascii')
        return [
            {
                'role': 'user',
                'content': [
                    {'type': 'text', 'text': self.prompt},
                    {
                        'type': 'image_url',
                        'image_url': {
                            'url': f"data:{media_type};base64,{encoded}",
                            'detail': self.detail,
                        },
                    },
                ],
            }
        ]

    async def _request_completion(self, image_bytes: bytes, media_type: str) -> str:
        if self.openai_client is None and not self.api_key:
            raise CollaboratorError(
                "OpenAI client not configured. Set OPENAI_API_KEY.")

        messages = self.build_messages(image_bytes, media_type)

        try:
            if self.openai_client is not None:
                completion = await self._create_completion(self.openai_client, messages)
            else:
                # The HTTP pool is bound to the event loop, and each batch runs in its own loop
                async with self._new_client() as openai_client:
                    completion = await self._create_completion(openai_client, messages)
        except openai.APITimeoutError as e:
            raise CollaboratorError(f"OpenAI request timed out: {e}", retriable=True) from e
        except _RETRIABLE_OPENAI_ERRORS as e:
            raise CollaboratorError(f"OpenAI request failed: {e}", retriable=True) from e
        except openai.OpenAIError as e:
            raise CollaboratorError(f"OpenAI request failed: {e}") from e

        choices = getattr(completion, 'choices', None) or []
        if not choices:
            raise CollaboratorError("OpenAI returned no choices")
        content = getattr(choices[0].message, 'content', None)
        if not isinstance(content, str):
            raise UpstreamFormatError("OpenAI returned a completion without text content")
        return content

    async def _create_completion(self, openai_client, messages):
        return await openai_client.chat.completions.create(
            model=self.model,
            response_format={'type': 'json_object'},
            messages=messages,
            max_tokens=self.max_tokens,
        )


class LegacyVisionClient(BaseVisionClient):
    """Client for a self-hosted endpoint taking form data (prompt + image file)"""

    backend_name = "Legacy API"

    def __init__(self, endpoint: str, api_key: str = "", request_timeout: float = 90.0,
                 **kwargs):
        super().__init__(**kwargs)
        self.endpoint = endpoint
        self.api_key = api_key
        self._client_timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def _request_completion(self, image_bytes: bytes, media_type: str) -> str:
        if not self.endpoint:
            raise CollaboratorError(
                "Legacy API not configured. Set LEGACY_API_ENDPOINT.")

        subtype = media_type.split('/', 1)[-1] or 'bin'
        data = aiohttp.FormData()
        data.add_field('text', self.prompt)
        data.add_field('image', image_bytes,
                       filename=f"upload.{subtype}", content_type=media_type)

        headers = {}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"

        # One session per call: each batch runs in its own event loop
        try:
            async with aiohttp.ClientSession(timeout=self._client_timeout) as session:
                async with session.post(self.endpoint, data=data, headers=headers) as response:
                    response_text = await response.text()
                    if response.status != 200:
                        raise CollaboratorError(
                            f"Legacy API request failed with status {response.status}: {response_text[:1000]}",
                            retriable=response.status >= 500 or response.status == 429)
        except asyncio.TimeoutError as e:
            raise CollaboratorError("Legacy API request timed out", retriable=True) from e
        except aiohttp.ClientError as e:
            raise CollaboratorError(f"Legacy API request failed: {e!r}", retriable=True) from e

        return unwrap_legacy_response(response_text)


def unwrap_legacy_response(response_text: str) -> str:
    """Return the analysis text from a legacy endpoint's reply.

    The endpoint answers either with the analysis itself or with an envelope
    ``{"response": <analysis text or object>}``; a ``detail`` string reports an
    error even on HTTP 200.
    """
    try:
        api_response = json.loads(response_text)
    except json.JSONDecodeError:
        # Not an envelope; let parse_analysis_text deal with fences/prose
        return response_text

    if not isinstance(api_response, dict):
        return response_text

    detail = api_response.get('detail')
    if isinstance(detail, str) and ('invalid' in detail.lower() or 'error' in detail.lower()):
        raise CollaboratorError(f"Legacy API returned error: {detail}")

    if 'response' in api_response:
        analysis = api_response['response']
        if isinstance(analysis, str):
            return analysis.strip()
        return json.dumps(analysis)

    return response_text


def create_vision_client(cfg) -> BaseVisionClient:
    """Build the collaborator adapter selected by ``cfg.api_backend``"""
    common = {
        'prompt': cfg.vision_prompt or None,
        'retry_attempts': cfg.retry_attempts,
        'retry_delay': cfg.retry_delay,
    }

    if cfg.api_backend == "legacy":
        logger.info(f"Legacy API endpoint configured: {cfg.legacy_api_endpoint}")
        return LegacyVisionClient(
            endpoint=cfg.legacy_api_endpoint,
            api_key=cfg.legacy_api_key,
            request_timeout=cfg.request_timeout,
            **common,
        )

    return OpenAIVisionClient(
        api_key=cfg.openai_api_key,
        model=cfg.openai_model,
        base_url=cfg.openai_base_url,
        detail=cfg.vision_detail,
        max_tokens=cfg.vision_max_tokens,
        request_timeout=cfg.request_timeout,
        **common,
    )
