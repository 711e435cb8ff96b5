"""
Zone classification collaborators.

A classifier turns raw provider zone names into a proposed City/District/Area
grouping. The pipeline treats it as a black box behind ``ZoneClassifier``;
``review_classifications`` then applies the rules that decide which zones
must be mapped by a human instead of being accepted as proposed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Protocol, Sequence

import requests

from ..errors import NetworkTransient, ValidationError
from ..retry import classify_http_status, parse_retry_after
from .provider import ProviderZone

DEFAULT_AI_GATEWAY_URL = "https://ai.gateway.lovable.dev/v1/chat/completions"
DEFAULT_AI_MODEL = "google/gemini-2.5-flash"
CLASSIFIER_BATCH_SIZE = 30

_INTERNAL_CODE_PATTERNS = (
    re.compile(r"^\d+$"),
    re.compile(r"^[A-Za-z]{1,4}[-_ ]?\d{1,5}[A-Za-z]?$"),
    re.compile(r"^(area|zone|sone|omr[aå]de)\s*[-_#]?\s*\d+$", re.IGNORECASE),
    re.compile(r"^(?=.*\d)[A-Z0-9]+(?:[-_][A-Z0-9]+)+$"),
)
_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

SYSTEM_PROMPT = (
    "You are a Norwegian geography expert. Return only valid JSON, no markdown formatting or explanation."
)


@dataclass(frozen=True)
class ZoneClassification:
    zone_id: int
    original_name: str
    city: str | None
    district: str | None
    area: str | None
    confidence: float | None = None
    needs_mapping: bool = False
    reason: str | None = None


class ZoneClassifier(Protocol):
    def classify(
        self, zones: Sequence[ProviderZone], *, city_hint: str | None = None
    ) -> list[ZoneClassification]: ...


def looks_like_internal_code(name: str | None) -> bool:
    """True when a zone name reads like an internal identifier rather than a place."""
    if not name or not name.strip():
        return True
    candidate = name.strip()
    return any(pattern.match(candidate) for pattern in _INTERNAL_CODE_PATTERNS)


def _flag(result: ZoneClassification, reason: str) -> ZoneClassification:
    if result.needs_mapping:
        return result
    return replace(result, needs_mapping=True, reason=reason)


def review_classifications(
    zones: Sequence[ProviderZone],
    results: Iterable[ZoneClassification],
    *,
    min_confidence: float = 0.5,
) -> list[ZoneClassification]:
    """
    Align classifier output with the input zones and flag anything that needs a human.

    Every input zone gets exactly one result, in input order. Zones the
    classifier skipped, whose names are internal codes, that lack a city or
    district, or whose confidence is below ``min_confidence`` are flagged
    ``needs_mapping``.
    """

    by_id: dict[int, ZoneClassification] = {}
    for result in results:
        by_id.setdefault(result.zone_id, result)

    reviewed: list[ZoneClassification] = []
    for zone in zones:
        result = by_id.get(zone.id)
        if result is None:
            reviewed.append(
                ZoneClassification(
                    zone_id=zone.id,
                    original_name=zone.name,
                    city=zone.city_hint,
                    district=None,
                    area=zone.name,
                    needs_mapping=True,
                    reason="not_classified",
                )
            )
            continue
        if result.original_name != zone.name:
            result = replace(result, original_name=zone.name)
        if looks_like_internal_code(zone.name):
            result = _flag(result, "internal_code")
        elif not result.city or not result.district:
            result = _flag(result, "incomplete_classification")
        elif result.confidence is not None and result.confidence < min_confidence:
            result = _flag(result, "low_confidence")
        if not result.area:
            result = replace(result, area=zone.name)
        reviewed.append(result)
    return reviewed


class HintOnlyClassifier:
    """
    Classifier used when no AI gateway is configured.

    Uses the provider's city hint for both city and district and keeps the
    zone name as the area; zones without a hint are left for manual mapping.
    """

    def classify(self, zones: Sequence[ProviderZone], *, city_hint: str | None = None) -> list[ZoneClassification]:
        results = []
        for zone in zones:
            city = zone.city_hint or city_hint
            results.append(
                ZoneClassification(
                    zone_id=zone.id,
                    original_name=zone.name,
                    city=city,
                    district=city,
                    area=zone.name,
                    needs_mapping=city is None,
                    reason=None if city else "missing_city_hint",
                )
            )
        return results


def build_prompt(zones: Sequence[ProviderZone], *, city_hint: str | None = None) -> str:
    payload = [{"id": zone.id, "name": zone.name, "city_hint": zone.city_hint} for zone in zones]
    city_line = f"All areas are believed to belong to {city_hint}.\n" if city_hint else ""
    return (
        "Given these delivery area names from a service provider, classify each into:\n"
        "1. City (kommune or major city)\n"
        "2. District (bydel, administrative area or neighbourhood group; for Oslo use the official bydeler)\n"
        "3. Area (the specific neighbourhood or postal area; preserve the original name)\n\n"
        f"{city_line}"
        "If a name is an internal code rather than a place name, or you are unsure, set "
        '"needs_mapping": true instead of guessing. Give a "confidence" between 0 and 1.\n\n'
        f"Input areas:\n{json.dumps(payload, ensure_ascii=False)}\n\n"
        "Return ONLY a JSON array of objects with the keys "
        '"original", "navio_id", "city", "district", "area", "confidence", "needs_mapping".'
    )


def parse_classifier_content(content: str) -> list[Mapping[str, Any]]:
    """Parse the model's reply, tolerating markdown code fences."""
    cleaned = _FENCE.sub("", content or "").replace("```", "").strip()
    parsed = json.loads(cleaned)
    if isinstance(parsed, Mapping):
        parsed = parsed.get("areas") or parsed.get("results") or []
    if not isinstance(parsed, list):
        raise ValueError("Classifier reply is not a JSON array.")
    return [item for item in parsed if isinstance(item, Mapping)]


def _to_classification(item: Mapping[str, Any]) -> ZoneClassification | None:
    try:
        zone_id = int(item["navio_id"])
    except (KeyError, TypeError, ValueError):
        return None
    confidence = item.get("confidence")
    try:
        confidence = float(confidence) if confidence is not None else None
    except (TypeError, ValueError):
        confidence = None
    return ZoneClassification(
        zone_id=zone_id,
        original_name=str(item.get("original") or ""),
        city=(item.get("city") or None),
        district=(item.get("district") or None),
        area=(item.get("area") or None),
        confidence=confidence,
        needs_mapping=bool(item.get("needs_mapping", False)),
        reason="classifier_flagged" if item.get("needs_mapping") else None,
    )


class AIGatewayClassifier:
    """Classify zones through an OpenAI-compatible chat-completions gateway."""

    def __init__(
        self,
        *,
        api_key: str | None,
        url: str = DEFAULT_AI_GATEWAY_URL,
        model: str = DEFAULT_AI_MODEL,
        session: requests.Session | None = None,
        timeout: float = 60.0,
        batch_size: int = CLASSIFIER_BATCH_SIZE,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_key = api_key
        self.url = url
        self.model = model
        self.session = session or requests.Session()
        self.timeout = timeout
        self.batch_size = max(1, int(batch_size))
        self.logger = logger or logging.getLogger(__name__)

    def classify(self, zones: Sequence[ProviderZone], *, city_hint: str | None = None) -> list[ZoneClassification]:
        if not self.api_key:
            raise ValidationError("NAVIO_AI_API_KEY is not configured.")
        results: list[ZoneClassification] = []
        for start in range(0, len(zones), self.batch_size):
            results.extend(self._classify_chunk(zones[start : start + self.batch_size], city_hint=city_hint))
        return results

    def _classify_chunk(self, zones: Sequence[ProviderZone], *, city_hint: str | None) -> list[ZoneClassification]:
        try:
            response = self.session.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": build_prompt(zones, city_hint=city_hint)},
                    ],
                },
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise NetworkTransient(f"Classifier unreachable: {exc}") from exc

        if not response.ok:
            raise classify_http_status(
                response.status_code,
                message=f"Classifier error: {response.status_code}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
            items = parse_classifier_content(content)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            # Unreadable output: every zone in the chunk goes to manual mapping.
            self.logger.warning(
                "Classifier reply could not be parsed: %s",
                exc,
                extra={"navio_zone_ids": [zone.id for zone in zones]},
            )
            return [
                ZoneClassification(
                    zone_id=zone.id,
                    original_name=zone.name,
                    city=zone.city_hint or city_hint,
                    district=None,
                    area=zone.name,
                    needs_mapping=True,
                    reason="unparseable_classifier_reply",
                )
                for zone in zones
            ]

        return [result for result in (_to_classification(item) for item in items) if result is not None]


def create_classifier(config: Mapping[str, Any], **kwargs) -> ZoneClassifier:
    """Build the configured classifier (``NAVIO_CLASSIFIER`` = ``ai`` or ``hints``)."""
    kind = str(config.get("NAVIO_CLASSIFIER", "ai")).strip().lower()
    if kind == "hints" or not config.get("NAVIO_AI_API_KEY"):
        return HintOnlyClassifier()
    return AIGatewayClassifier(
        api_key=config.get("NAVIO_AI_API_KEY"),
        url=config.get("NAVIO_AI_GATEWAY_URL") or DEFAULT_AI_GATEWAY_URL,
        model=config.get("NAVIO_AI_MODEL") or DEFAULT_AI_MODEL,
        timeout=float(config.get("NAVIO_AI_TIMEOUT", 60.0)),
        **kwargs,
    )
