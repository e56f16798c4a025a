import asyncio
import json
from unittest.mock import MagicMock

import pytest
import requests

from upscaler.core.media import MediaInfo
from upscaler.core.topaz_client import (
    TopazClient,
    VideoOptions,
    build_filters,
    build_video_request,
    extract_download_url,
    extract_upload_url,
    output_resolution,
    raise_for_response,
)
from upscaler.errors import (
    CreditExhausted,
    InvalidCredential,
    NetworkError,
    RateLimited,
    RemoteRequestError,
)


def make_response(status_code, body=None, headers=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body).encode() if body is not None else b""
    response.headers.update(headers or {})
    return response


@pytest.mark.parametrize("data", [
    {"urls": ["https://upload/one"]},
    {"uploadUrls": ["https://upload/one", "https://upload/two"]},
    {"uploadUrl": "https://upload/one"},
    {"data": {"urls": ["https://upload/one"]}},
])
def test_extract_upload_url_variants(data):
    assert extract_upload_url(data) == "https://upload/one"


def test_extract_upload_url_missing():
    assert extract_upload_url({"urls": []}) is None
    assert extract_upload_url({"status": "accepted"}) is None


@pytest.mark.parametrize("data", [
    {"download": {"url": "https://dl/result.mp4"}},
    {"download": "https://dl/result.mp4"},
    {"downloadUrl": "https://dl/result.mp4"},
    {"data": {"download": {"url": "https://dl/result.mp4"}}},
])
def test_extract_download_url_variants(data):
    assert extract_download_url(data) == "https://dl/result.mp4"


def test_extract_download_url_missing():
    assert extract_download_url({"status": "processing"}) is None


def test_output_resolution_follows_source_orientation():
    landscape = MediaInfo(width=1920, height=1080)
    portrait = MediaInfo(width=1080, height=1920)

    assert output_resolution(landscape, "3840x2160") == (3840, 2160)
    assert output_resolution(portrait, "3840x2160") == (2160, 3840)


def test_build_filters():
    assert build_filters("unknown-model", frame_interpolation=None) == [{"model": "prob-4"}]

    filters = build_filters("nyx-3", frame_interpolation="apo-8", slow_motion=2, crop_to_fit=True)
    assert filters == [
        {"model": "nyx-3", "cropToFit": True},
        {"model": "apo-8", "slowmo": 2, "fps": 60, "duplicate": False},
    ]


def test_build_video_request():
    source = MediaInfo(width=1280, height=720, duration=12, frame_rate=25, frame_count=300,
                       container="mov", size=5000)
    options = VideoOptions(model="prob-4", resolution="1920x1080", frame_interpolation=None)

    body = build_video_request(source, options)

    assert body["source"] == {
        "resolution": {"width": 1280, "height": 720},
        "container": "mov",
        "size": 5000,
        "duration": 12,
        "frameCount": 300,
        "frameRate": 25,
    }
    assert body["output"]["resolution"] == {"width": 1920, "height": 1080}
    assert body["output"]["audioTransfer"] == "None"
    assert body["output"]["videoEncoder"] == "H264"
    assert body["filters"] == [{"model": "prob-4"}]


def test_raise_for_response_passes_success():
    raise_for_response(make_response(200, {"ok": True}))


def test_rate_limit_uses_retry_after():
    with pytest.raises(RateLimited) as exc_info:
        raise_for_response(make_response(429, {"message": "Too many requests"}, {"Retry-After": "5"}))

    assert exc_info.value.retry_after_ms == 5000
    assert str(exc_info.value) == "Too many requests"


def test_rate_limit_defaults_to_one_minute():
    with pytest.raises(RateLimited) as exc_info:
        raise_for_response(make_response(429, {"message": "slow down"}))

    assert exc_info.value.retry_after_ms == 60000


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures_are_invalid_credentials(status):
    with pytest.raises(InvalidCredential):
        raise_for_response(make_response(status, {"message": "Invalid API key"}))


@pytest.mark.parametrize("status,message", [
    (402, "Payment required"),
    (400, "Credit refill in progress"),
    (400, "Insufficient credits for this request"),
])
def test_credit_failures(status, message):
    with pytest.raises(CreditExhausted):
        raise_for_response(make_response(status, {"message": message}))


def test_other_failures_are_generic():
    with pytest.raises(RemoteRequestError) as exc_info:
        raise_for_response(make_response(500, {"error": "internal"}))

    assert not isinstance(exc_info.value, CreditExhausted)
    assert exc_info.value.status_code == 500
    assert str(exc_info.value) == "internal"


def test_transport_errors_become_network_errors():
    client = TopazClient("key-aaaa-1", base_url="https://api.example")
    client.session.request = MagicMock(side_effect=requests.ConnectionError("connection refused"))

    with pytest.raises(NetworkError):
        asyncio.run(client.check_status("req-1"))


def test_check_status_normalizes_response():
    client = TopazClient("key-aaaa-1", base_url="https://api.example/")
    client.session.request = MagicMock(return_value=make_response(200, {
        "status": "Complete",
        "progress": "100",
        "download": {"url": "https://dl/result.mp4"},
    }))

    result = asyncio.run(client.check_status("req-1"))

    assert result.status == "complete"
    assert result.progress == 100.0
    assert result.download_url == "https://dl/result.mp4"
    method, url = client.session.request.call_args[0]
    assert (method, url) == ("GET", "https://api.example/video/req-1/status")


def test_create_video_request_requires_request_id():
    client = TopazClient("key-aaaa-1")
    client.session.request = MagicMock(return_value=make_response(200, {"status": "requested"}))

    with pytest.raises(RemoteRequestError):
        asyncio.run(client.create_video_request(MediaInfo(), VideoOptions()))


def test_accept_returns_first_upload_url():
    client = TopazClient("key-aaaa-1")
    client.session.request = MagicMock(return_value=make_response(200, {"uploadUrls": ["https://u/1"]}))

    assert asyncio.run(client.accept_video_request("req-1")) == "https://u/1"


def test_credit_balance():
    client = TopazClient("key-aaaa-1")
    client.session.request = MagicMock(return_value=make_response(200, {
        "available_credits": 250,
        "reserved_credits": 10,
        "total_credits": 260,
    }))

    balance = asyncio.run(client.get_credit_balance())

    assert (balance.available, balance.reserved, balance.total) == (250, 10, 260)


def test_api_key_is_sent_in_header():
    client = TopazClient("key-aaaa-1")

    assert client.session.headers["X-API-Key"] == "key-aaaa-1"
    assert "key-aaaa-1" not in repr(client)
