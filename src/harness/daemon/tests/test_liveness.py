"""
存活探测测试，使用 httpx.MockTransport 模拟节点控制接口，不启动真实进程。
"""

import time

import httpx
import pytest

from src.harness.daemon.errors import LivenessError
from src.harness.daemon.services.liveness import api_url, wait_for_api


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_api_url():
    assert api_url(":1234") == "http://127.0.0.1:1234/api/id"
    assert api_url("localhost:8080") == "http://localhost:8080/api/id"


def test_ready_node_returns_on_first_probe():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"ID": "QmNode", "Addresses": []})

    wait_for_api(":4000", attempts=5, interval_s=0.01, client=_client(handler))
    assert calls == ["http://127.0.0.1:4000/api/id"]


def test_probe_failures_are_retried():
    responses = [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"Addresses": []}),
        httpx.Response(200, json=["ID"]),
        httpx.Response(200, json={"ID": "QmNode"}),
    ]
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return responses[len(calls) - 1]

    wait_for_api(":4001", attempts=10, interval_s=0.01, client=_client(handler))
    assert len(calls) == 4


def test_connection_errors_are_swallowed():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"ID": "QmNode"})

    wait_for_api(":4002", attempts=10, interval_s=0.01, client=_client(handler))
    assert len(calls) == 3


def test_budget_exhausted_raises():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, json={"Peers": []})

    with pytest.raises(LivenessError) as ei:
        wait_for_api(":4003", attempts=4, interval_s=0.01, client=_client(handler))
    assert len(calls) == 4
    assert "seconds" in str(ei.value)


def test_no_sleep_after_last_attempt():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    start = time.monotonic()
    with pytest.raises(LivenessError):
        wait_for_api(":4004", attempts=1, interval_s=5.0, client=_client(handler))
    assert time.monotonic() - start < 1.0


def test_dead_process_fails_fast():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(LivenessError) as ei:
        wait_for_api(":4005", attempts=50, interval_s=0.01, client=_client(handler), alive=lambda: len(calls) < 2)
    assert len(calls) == 2
    assert "exited" in str(ei.value)
