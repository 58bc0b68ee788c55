import asyncio

import httpx
import pytest

from vmawatch.models import AlertSource
from vmawatch.vma_api import VmaApi


def _fetch(cfg, handler, source=AlertSource.PRODUCTION, checked=False):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            api = VmaApi(cfg, client)
            if checked:
                return await api.fetch_alerts_checked(source)
            return await api.fetch_alerts(source)

    return asyncio.run(scenario())


def test_fetch_parses_alerts(fast_cfg, alert_payload):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(
            200,
            json={"timestamp": "2026-01-01T00:00:00Z", "alerts": [alert_payload("a"), alert_payload("b")]},
        )

    alerts = _fetch(fast_cfg, handler)

    assert [a.incident_id for a in alerts] == ["a", "b"]
    assert str(requests[0].url) == fast_cfg.endpoint(AlertSource.PRODUCTION).api_url
    assert requests[0].headers["accept"] == "application/json"


def test_test_source_uses_test_endpoint(fast_cfg):
    urls = []

    def handler(request):
        urls.append(str(request.url))
        return httpx.Response(200, json={"alerts": []})

    _fetch(fast_cfg, handler, source=AlertSource.TEST)

    assert urls == ["https://vmaapi.sr.se/testapi/v3/alerts"]


def test_missing_alerts_field_is_empty(fast_cfg):
    assert _fetch(fast_cfg, lambda r: httpx.Response(200, json={"timestamp": "x"})) == []


def test_malformed_records_are_skipped(fast_cfg, alert_payload):
    body = {"alerts": [alert_payload("good"), {"msgType": "Alert"}, "junk"]}
    alerts = _fetch(fast_cfg, lambda r: httpx.Response(200, json=body))

    assert [a.incident_id for a in alerts] == ["good"]


def test_server_error_yields_empty_list(fast_cfg):
    assert _fetch(fast_cfg, lambda r: httpx.Response(500, text="internal error")) == []


def test_invalid_json_yields_empty_list(fast_cfg):
    assert _fetch(fast_cfg, lambda r: httpx.Response(200, text="<html>oops</html>")) == []


def test_non_object_json_yields_empty_list(fast_cfg):
    assert _fetch(fast_cfg, lambda r: httpx.Response(200, json=[1, 2, 3])) == []


def test_network_error_yields_empty_list(fast_cfg):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert _fetch(fast_cfg, handler) == []


def test_checked_fetch_raises(fast_cfg):
    with pytest.raises(httpx.HTTPStatusError):
        _fetch(fast_cfg, lambda r: httpx.Response(503, text="busy"), checked=True)
