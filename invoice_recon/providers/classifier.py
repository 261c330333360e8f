"""Client for the external document classifier (OpenAI-compatible chat API)."""
from __future__ import annotations

import base64
import json
import logging
import mimetypes
import os
from typing import Any, Dict, Optional

import requests

from invoice_recon.core.errors import ProviderError, TransientError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You read scanned invoices and receipts. Respond ONLY with a JSON object containing "
    "'vendor', 'amount', 'currency' (ISO 4217 code), 'invoice_date' (YYYY-MM-DD) and 'category'. "
    "Use null for anything you cannot read. Amounts are plain numbers; refunds are negative."
)


class DocumentClassifier:
    """Extract candidate invoice fields from a document.

    The response is untrusted input: callers run it through
    ``quality.validate_candidate`` before it becomes a record.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.base_url = (base_url or os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")).rstrip("/")
        self.disabled = os.getenv("CLASSIFIER_DISABLED", "0") == "1" or not self.api_key
        self.timeout = timeout
        self.session = session or (requests.Session() if not self.disabled else None)

    def classify(self, content: bytes, filename: str) -> Dict[str, Any]:
        """Return the raw candidate dict, empty when the classifier is disabled."""

        if self.disabled or self.session is None:
            logger.debug("Classifier disabled; skipping %s", filename)
            return {}

        mime_type = mimetypes.guess_type(filename)[0] or "application/pdf"
        encoded = base64.b64encode(content).decode("ascii")
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": f"File name: {filename}"},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                    ],
                },
            ],
            "temperature": 0,
            "response_format": {"type": "json_object"},
        }

        try:
            response = self.session.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientError(f"classifier call for {filename} failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"classifier returned {response.status_code} for {filename}")
        try:
            response.raise_for_status()
            content_text = response.json()["choices"][0]["message"]["content"]
            data = json.loads(content_text)
        except (requests.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(f"classifier gave an unusable answer for {filename}: {exc}") from exc
        if not isinstance(data, dict):
            raise ProviderError(f"classifier answer for {filename} is not an object")
        return data
