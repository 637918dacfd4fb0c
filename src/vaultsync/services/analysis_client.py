"""HTTP client for the external image analysis service.

Learn: The analysis call is slow (tens of seconds) and not under our
control, so this module is a hard boundary:

1. A total timeout (asyncio.wait_for, 90s default) on top of httpx's
   per-phase timeouts. Hitting it is a RetryableServiceError.
2. Failures are classified exactly once, here:
     timeout, connection refused, DNS failure, HTTP 5xx → RetryableServiceError
     HTTP 4xx, non-JSON body, wrong shape             → UnrecoverableServiceError
3. The response is validated against a tagged union per field — a bare
   scalar ("Nike") or a scored object ({"value": "Nike", "confidence": 0.93}) —
   and normalized to FieldValue. Nothing downstream sees the raw shape.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx
import structlog
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
)
from pydantic import ValidationError as PydanticValidationError

from vaultsync.errors import RetryableServiceError, UnrecoverableServiceError

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 90.0

# Confidence substituted when the service sends a bare value
PRIMARY_DEFAULT_CONFIDENCE = 0.8  # brand, model
SECONDARY_DEFAULT_CONFIDENCE = 0.7  # colorway


# ─── Raw response shapes ────────────────────────────────

Scalar = Union[StrictStr, StrictInt, StrictFloat]


class ScoredValue(BaseModel):
    value: Scalar
    confidence: Optional[float] = None


RawField = Union[Scalar, ScoredValue, None]


class RawAnalysisResponse(BaseModel):
    """What the service may send. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    brand: RawField = None
    model: RawField = None
    colorway: RawField = None
    processed_image_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("processed_image_url", "processedImageUrl"),
    )
    partial: Optional[bool] = None
    status: Optional[str] = None


# ─── Normalized result ──────────────────────────────────


@dataclass(frozen=True)
class FieldValue:
    value: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "confidence": self.confidence}


@dataclass(frozen=True)
class AnalysisResult:
    brand: Optional[FieldValue] = None
    model: Optional[FieldValue] = None
    colorway: Optional[FieldValue] = None
    processed_image_url: Optional[str] = None
    partial: bool = False

    def fields(self) -> dict[str, dict[str, Any]]:
        """Present fields only, in canonical {value, confidence} form."""
        out = {}
        for name in ("brand", "model", "colorway"):
            fv = getattr(self, name)
            if fv is not None:
                out[name] = fv.to_dict()
        return out


def _coerce_confidence(confidence: Optional[float], default: float) -> float:
    """Clamp to [0, 1]. Missing or non-finite scores get the default."""
    if confidence is None or not math.isfinite(confidence):
        return default
    return min(max(confidence, 0.0), 1.0)


def normalize_field(raw: RawField, default_confidence: float) -> Optional[FieldValue]:
    """Coerce one field of the tagged union to FieldValue (None if absent)."""
    if raw is None:
        return None
    if isinstance(raw, ScoredValue):
        value = str(raw.value).strip()
        if not value:
            return None
        confidence = _coerce_confidence(raw.confidence, default_confidence)
        return FieldValue(value=value, confidence=confidence)
    value = str(raw).strip()
    if not value:
        return None
    return FieldValue(value=value, confidence=default_confidence)


def parse_analysis_response(body: Any) -> AnalysisResult:
    """Validate and normalize a decoded JSON body."""
    if not isinstance(body, dict):
        raise UnrecoverableServiceError(
            f"Malformed analysis response: expected object, got {type(body).__name__}"
        )
    try:
        raw = RawAnalysisResponse.model_validate(body)
    except PydanticValidationError as e:
        raise UnrecoverableServiceError(
            f"Malformed analysis response: {e.error_count()} invalid field(s)"
        ) from e

    return AnalysisResult(
        brand=normalize_field(raw.brand, PRIMARY_DEFAULT_CONFIDENCE),
        model=normalize_field(raw.model, PRIMARY_DEFAULT_CONFIDENCE),
        colorway=normalize_field(raw.colorway, SECONDARY_DEFAULT_CONFIDENCE),
        processed_image_url=raw.processed_image_url or None,
        partial=bool(raw.partial) or raw.status == "partial",
    )


# ─── Client ─────────────────────────────────────────────


class AnalysisClient:
    """Calls POST {base_url}/analyze.

    Pass `http_client` to share a connection pool (or a MockTransport in
    tests); otherwise the client owns one and close() releases it.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def analyze(self, image_url: str, category: str) -> AnalysisResult:
        endpoint = f"{self.base_url}/analyze"
        log = logger.bind(endpoint=endpoint, category=category)
        started = time.monotonic()
        log.info("analysis.request")

        try:
            response = await asyncio.wait_for(
                self._http.post(
                    endpoint,
                    json={"image_url": image_url, "category": category},
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            log.error("analysis.timeout", timeout=self.timeout)
            raise RetryableServiceError("Analysis service timeout") from e
        except httpx.TransportError as e:
            log.error("analysis.unreachable", error=str(e))
            raise RetryableServiceError(f"Analysis service unreachable: {e}") from e

        duration = round(time.monotonic() - started, 3)
        status = response.status_code

        if status >= 500:
            log.error("analysis.error_response", status=status, body=response.text[:500], duration=duration)
            raise RetryableServiceError(f"Analysis service returned {status}", status_code=status)
        if status >= 300:
            log.error("analysis.error_response", status=status, body=response.text[:500], duration=duration)
            raise UnrecoverableServiceError(f"Analysis service returned {status}", status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise UnrecoverableServiceError("Analysis service returned invalid JSON") from e

        result = parse_analysis_response(body)
        log.info(
            "analysis.response",
            duration=duration,
            has_brand=result.brand is not None,
            has_model=result.model is not None,
            partial=result.partial,
        )
        return result

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()
