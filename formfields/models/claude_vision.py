"""
Vision provider client: one rendered page image plus a text prompt per call
against the Anthropic Messages API.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from formfields.config import CONFIG, PipelineConfig
from formfields.errors import VisionProviderError

logger = logging.getLogger(__name__)

API_KEY_ENV = "ANTHROPIC_API_KEY"
TRUNCATED_STOP_REASON = "max_tokens"


@dataclass(frozen=True)
class VisionReply:
    """Text of the model's first content block and why generation stopped."""
    text: str
    stop_reason: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.stop_reason == TRUNCATED_STOP_REASON


class ClaudeVisionClient:
    """
    Thin wrapper around ``requests`` for multi-modal Messages API calls.

    No retries: retry/backoff policy belongs to the caller.
    """

    def __init__(self, api_key: Optional[str] = None, config: PipelineConfig = CONFIG,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key or os.environ.get(API_KEY_ENV)
        if not self.api_key:
            raise VisionProviderError("No API key: pass api_key or set %s" % API_KEY_ENV)
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.config.vision_api_version,
            "content-type": "application/json",
        }

    def build_payload(self, system_prompt: str, user_prompt: str, image_b64: str) -> Dict:
        return {
            "model": self.config.vision_model,
            "max_tokens": self.config.vision_max_tokens,
            "system": system_prompt,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": "image/jpeg",
                                "data": image_b64,
                            },
                        },
                        {"type": "text", "text": user_prompt},
                    ],
                }
            ],
        }

    def send(self, system_prompt: str, user_prompt: str, image_b64: str) -> VisionReply:
        """
        Submit one image + prompt.

        Raises:
            VisionProviderError: transport failure, non-2xx status, or a
                body that is not a Messages API reply
        """
        payload = self.build_payload(system_prompt, user_prompt, image_b64)
        logger.debug("Vision request: %dKB image, model %s", len(image_b64) // 1024, self.config.vision_model)

        try:
            response = self.session.post(
                self.config.vision_api_url,
                headers=self._headers(),
                json=payload,
                timeout=(self.config.vision_connect_timeout, self.config.vision_read_timeout),
            )
        except requests.RequestException as e:
            raise VisionProviderError("Vision request failed: %s" % e) from e

        if not response.ok:
            raise VisionProviderError(
                "Vision API error %d: %s" % (response.status_code, response.text[:500]),
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise VisionProviderError("Vision API returned non-JSON body: %s" % e,
                                      status_code=response.status_code) from e

        if not isinstance(body, dict):
            raise VisionProviderError("Unexpected vision API body: %r" % type(body),
                                      status_code=response.status_code)

        text = ""
        for block in body.get("content") or []:
            if isinstance(block, dict) and block.get("type", "text") == "text":
                text = block.get("text") or ""
                break

        return VisionReply(text=text, stop_reason=body.get("stop_reason"))
