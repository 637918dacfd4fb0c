"""External analysis client tests — normalization and error classification.

Learn: httpx.MockTransport answers the client's POSTs in-process, so each
test picks exactly the status code / body / failure it needs.
"""

import asyncio
import json

import httpx
import pytest

from conftest import analysis_client_for
from vaultsync.errors import RetryableServiceError, UnrecoverableServiceError
from vaultsync.services.analysis_client import (
    PRIMARY_DEFAULT_CONFIDENCE,
    SECONDARY_DEFAULT_CONFIDENCE,
    AnalysisClient,
    parse_analysis_response,
)


# ═══════════════════════════════════════════════════════════
# Normalization
# ═══════════════════════════════════════════════════════════


def test_bare_values_get_default_confidence():
    result = parse_analysis_response(
        {"brand": "Nike", "model": "Air Max", "colorway": "Triple White"}
    )
    assert result.brand.value == "Nike"
    assert result.brand.confidence == PRIMARY_DEFAULT_CONFIDENCE == 0.8
    assert result.model.confidence == 0.8
    assert result.colorway.confidence == SECONDARY_DEFAULT_CONFIDENCE == 0.7


def test_scored_values_keep_their_confidence():
    result = parse_analysis_response(
        {
            "brand": {"value": "Adidas", "confidence": 0.95},
            "model": {"value": "Samba"},
            "colorway": {"value": "Black", "confidence": 0},
        }
    )
    assert result.brand.to_dict() == {"value": "Adidas", "confidence": 0.95}
    assert result.model.confidence == 0.8
    # An explicit zero is a real score, not a missing one
    assert result.colorway.confidence == 0


def test_out_of_range_confidence_is_clamped_not_fatal():
    result = parse_analysis_response(
        {
            "brand": {"value": "Nike", "confidence": 1.5},
            "model": {"value": "Air Max", "confidence": -0.2},
            "colorway": "Bred",
        }
    )
    assert result.brand.confidence == 1.0
    assert result.model.confidence == 0.0
    assert result.colorway.confidence == SECONDARY_DEFAULT_CONFIDENCE


def test_missing_and_blank_fields_are_omitted():
    result = parse_analysis_response({"brand": "Nike", "model": "  ", "extra": "ignored"})
    assert result.fields() == {"brand": {"value": "Nike", "confidence": 0.8}}


def test_processed_image_url_accepts_either_spelling():
    assert parse_analysis_response(
        {"processed_image_url": "https://cdn/a.png"}
    ).processed_image_url == "https://cdn/a.png"
    assert parse_analysis_response(
        {"processedImageUrl": "https://cdn/b.png"}
    ).processed_image_url == "https://cdn/b.png"


def test_partial_only_on_explicit_signal():
    assert parse_analysis_response({"brand": "Nike"}).partial is False
    assert parse_analysis_response({"brand": "Nike", "partial": True}).partial is True
    assert parse_analysis_response({"brand": "Nike", "status": "partial"}).partial is True


@pytest.mark.parametrize(
    "body",
    [
        ["not", "an", "object"],
        {"brand": {"confidence": 0.9}},
        {"model": {"value": {"name": "Air Max"}}},
        {"brand": ["Nike"]},
    ],
)
def test_malformed_bodies_are_unrecoverable(body):
    with pytest.raises(UnrecoverableServiceError):
        parse_analysis_response(body)


# ═══════════════════════════════════════════════════════════
# HTTP classification
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_analyze_posts_image_and_category():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"brand": "Nike", "model": "Air Max"})

    client = analysis_client_for(handler)
    result = await client.analyze("https://x/y.jpg", "sneaker")

    assert seen["url"] == "http://analysis.test/analyze"
    assert seen["body"] == {"image_url": "https://x/y.jpg", "category": "sneaker"}
    assert result.brand.value == "Nike"
    assert result.model.value == "Air Max"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [500, 502, 503])
async def test_server_errors_are_retryable(status):
    client = analysis_client_for(lambda request: httpx.Response(status, text="boom"))
    with pytest.raises(RetryableServiceError) as exc:
        await client.analyze("https://x/y.jpg", "sneaker")
    assert exc.value.status_code == status


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 404, 422])
async def test_client_errors_are_unrecoverable(status):
    client = analysis_client_for(lambda request: httpx.Response(status, json={"error": "bad image"}))
    with pytest.raises(UnrecoverableServiceError) as exc:
        await client.analyze("https://x/y.jpg", "sneaker")
    assert exc.value.status_code == status


@pytest.mark.asyncio
async def test_connection_failure_is_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = analysis_client_for(handler)
    with pytest.raises(RetryableServiceError, match="unreachable"):
        await client.analyze("https://x/y.jpg", "sneaker")


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    async def slow(request):
        await asyncio.sleep(1.0)
        return httpx.Response(200, json={"brand": "Nike"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(slow))
    client = AnalysisClient("http://analysis.test", timeout=0.05, http_client=http)

    with pytest.raises(RetryableServiceError, match="timeout"):
        await client.analyze("https://x/y.jpg", "sneaker")


@pytest.mark.asyncio
async def test_invalid_json_is_unrecoverable():
    client = analysis_client_for(lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(UnrecoverableServiceError, match="invalid JSON"):
        await client.analyze("https://x/y.jpg", "sneaker")
