"""OpenAI-backed buyer enrichment provider."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from openai import OpenAI

from config import settings
from services.credit_errors import UpstreamProviderFailure

logger = logging.getLogger(__name__)

ENRICHABLE_FIELDS = (
    "website_url",
    "email_address",
    "phone_number_e164",
    "address",
    "facebook_url",
    "linkedin_url",
    "youtube_url",
)
CONFIDENCE_LEVELS = ("High", "Medium", "Low")

SYSTEM_PROMPT = """
You are the data enrichment assistant of a trade CRM.
Using web evidence only, fill in missing contact details for the buyer company described by the user.

Rules:
1. Never invent values. Leave a field null when no source supports it.
2. The official website is the primary source; the Facebook page is a secondary source.
3. Every filled field must carry at least one evidence item.
4. Existing values are only verified, never replaced.

Return a strict JSON object:
{
  "website_url": "string|null",
  "email_address": "string|null",
  "phone_number_e164": "string|null",
  "address": "string|null",
  "facebook_url": "string|null",
  "linkedin_url": "string|null",
  "youtube_url": "string|null",
  "enrichment_summary": "string (state that the data is for reference only)",
  "confidence_level": "High|Medium|Low",
  "evidence": {
    "<field>": [{"source_type": "string", "source_url": "string", "snippet": "string"}]
  }
}
"""


@dataclass
class EnrichmentRequest:
    target_id: str
    buyer_name: str
    country: Optional[str] = None
    country_calling_code: Optional[str] = None
    existing: Dict[str, Optional[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "buyer_name": self.buyer_name,
            "country": self.country,
            "country_calling_code": self.country_calling_code,
            "existing": dict(self.existing),
        }


@dataclass
class EnrichmentResult:
    fields: Dict[str, Optional[str]]
    evidence: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)
    summary: str = ""
    confidence_level: str = "Low"

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.fields,
            "enrichment_summary": self.summary,
            "confidence_level": self.confidence_level,
            "evidence": self.evidence,
        }


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)


def _clean_text(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    if not text or text.lower() in {"null", "none", "n/a"}:
        return None
    return text


def _clean_evidence(raw: Any) -> Dict[str, List[Dict[str, str]]]:
    if not isinstance(raw, Mapping):
        return {}
    evidence: Dict[str, List[Dict[str, str]]] = {}
    for field_name in ENRICHABLE_FIELDS:
        items = raw.get(field_name)
        if not isinstance(items, list):
            continue
        cleaned = [
            {
                "source_type": str(item.get("source_type") or "").strip(),
                "source_url": str(item.get("source_url") or "").strip(),
                "snippet": str(item.get("snippet") or "").strip(),
            }
            for item in items
            if isinstance(item, Mapping) and (item.get("source_url") or item.get("snippet"))
        ]
        if cleaned:
            evidence[field_name] = cleaned
    return evidence


def parse_enrichment_payload(payload: Mapping[str, Any]) -> EnrichmentResult:
    """Normalize a raw provider JSON payload."""
    confidence = str(payload.get("confidence_level") or "Low").strip().capitalize()
    return EnrichmentResult(
        fields={field_name: _clean_text(payload.get(field_name)) for field_name in ENRICHABLE_FIELDS},
        evidence=_clean_evidence(payload.get("evidence")),
        summary=str(payload.get("enrichment_summary") or "").strip(),
        confidence_level=confidence if confidence in CONFIDENCE_LEVELS else "Low",
    )


def _user_message(request: EnrichmentRequest) -> str:
    existing_lines = [
        f"- {key}: {value}"
        for key, value in request.existing.items()
        if key in ENRICHABLE_FIELDS and _clean_text(value)
    ]
    return (
        "Buyer enrichment request\n\n"
        f"- buyer_name: \"{request.buyer_name}\"\n"
        f"- country: \"{request.country or 'Unknown'}\"\n"
        f"- country_calling_code: \"{request.country_calling_code or 'Unknown'}\"\n\n"
        "Existing fields:\n"
        f"{chr(10).join(existing_lines) or 'none'}\n\n"
        "Search the web and return the JSON schema. Fill only missing fields; return null without evidence."
    )


async def enrich_buyer_profile(request: EnrichmentRequest) -> EnrichmentResult:
    """
    Ask the provider for missing buyer contact fields.

    Raises ``UpstreamProviderFailure`` when the provider is not configured or
    the call fails. There is no deterministic fallback: fabricated contact
    data must never be billed.
    """
    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        raise UpstreamProviderFailure(
            "Enrichment provider is not configured.",
            reason="OPENAI_API_KEY missing",
        )

    try:
        response = await asyncio.to_thread(
            client.chat.completions.create,
            model=settings.ENRICHMENT_MODEL,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": _user_message(request)},
            ],
            response_format={"type": "json_object"},
        )
        raw_content = response.choices[0].message.content
        parsed = json.loads(raw_content or "{}")
    except Exception as exc:
        logger.warning("Enrichment provider call failed target=%s: %s", request.target_id, exc)
        raise UpstreamProviderFailure(reason=str(exc)) from exc

    if not isinstance(parsed, dict):
        raise UpstreamProviderFailure(reason="provider returned a non-object payload")
    return parse_enrichment_payload(parsed)
