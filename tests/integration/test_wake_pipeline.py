"""
End-to-end tests for the wake-and-proxy listener.

The resume command is replaced by a fake executor and the woken project by
respx routes on 127.0.0.1, so each test drives the full pipeline: buffer,
wake, probe, replay.
"""

import httpx
import pytest
import respx
from fastapi.testclient import TestClient

from waker.app import create_app
from waker.executor import ProcessResult

PROJECT_HEADER = "X-Pet-Sleep-Project"


@pytest.fixture
def build_client(waker_config, fake_executor):
    def _build():
        return TestClient(create_app(waker_config, executor=fake_executor))

    return _build


def test_wakes_project_and_proxies_request(build_client, fake_executor, write_project):
    write_project("alpha", port=4000)
    fake_executor.result = ProcessResult(exit_code=0, stdout="4001\n", stderr="")

    with respx.mock(assert_all_called=True) as mock:
        mock.head("http://127.0.0.1:4001/").respond(200)
        route = mock.get("http://127.0.0.1:4001/api/status").respond(
            200, json={"ok": True}, headers={"x-served-by": "alpha"}
        )

        with build_client() as client:
            response = client.get(
                "/api/status",
                headers={PROJECT_HEADER: "alpha", "accept": "application/json"},
            )

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert response.headers["x-served-by"] == "alpha"

    sent = route.calls.last.request
    assert PROJECT_HEADER.lower() not in sent.headers
    assert sent.headers["accept"] == "application/json"

    assert len(fake_executor.calls) == 1
    assert fake_executor.calls[0]["command"] == ["pet-wake", "alpha"]


def test_request_within_grace_period_reuses_wake(build_client, fake_executor, write_project):
    write_project("beta", port=4002)

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4002/").respond(200)
        mock.get("http://127.0.0.1:4002/").respond(200, text="hello")

        with build_client() as client:
            first = client.get("/", headers={PROJECT_HEADER: "beta"})
            second = client.get("/", headers={PROJECT_HEADER: "beta"})

    assert first.text == second.text == "hello"
    assert len(fake_executor.calls) == 1


def test_missing_routing_header_is_bad_request(build_client, fake_executor):
    with build_client() as client:
        response = client.get("/api/status")

    assert response.status_code == 400
    assert "Missing X-Pet-Sleep-Project header" in response.text
    assert fake_executor.calls == []


def test_blank_routing_header_is_bad_request(build_client, fake_executor):
    with build_client() as client:
        response = client.get("/", headers={PROJECT_HEADER: "   "})

    assert response.status_code == 400
    assert fake_executor.calls == []


def test_unknown_project_is_service_unavailable(build_client, fake_executor):
    with build_client() as client:
        response = client.get("/", headers={PROJECT_HEADER: "gamma"})

    assert response.status_code == 503
    assert "ConfigNotFound" in response.text
    assert "Project gamma not found" in response.text
    assert fake_executor.calls == []


def test_project_without_port_is_service_unavailable(build_client, fake_executor, write_project):
    write_project("delta")

    with build_client() as client:
        response = client.get("/", headers={PROJECT_HEADER: "delta"})

    assert response.status_code == 503
    assert "No port configured for delta" in response.text
    assert fake_executor.calls == []


def test_failed_resume_reports_stderr(build_client, fake_executor, write_project):
    write_project("epsilon", port=4003)
    fake_executor.result = ProcessResult(exit_code=1, stdout="", stderr="port in use")

    with build_client() as client:
        response = client.get("/", headers={PROJECT_HEADER: "epsilon"})

    assert response.status_code == 503
    assert response.text.startswith("Service Unavailable: WakeProcessFailure")
    assert "port in use" in response.text


def test_resume_timeout_is_service_unavailable(build_client, fake_executor, write_project):
    write_project("zeta", port=4004)
    fake_executor.result = ProcessResult(exit_code=-15, stdout="", stderr="", timed_out=True)

    with build_client() as client:
        response = client.get("/", headers={PROJECT_HEADER: "zeta"})

    assert response.status_code == 503
    assert "WakeTimeout" in response.text


def test_probe_exhaustion_never_proxies(build_client, fake_executor, write_project):
    write_project("eta", port=4005)

    with respx.mock(assert_all_called=False) as mock:
        probe = mock.head("http://127.0.0.1:4005/").mock(side_effect=httpx.ConnectError)
        proxied = mock.get("http://127.0.0.1:4005/api").respond(200)

        with build_client() as client:
            response = client.get("/api", headers={PROJECT_HEADER: "eta"})

    assert response.status_code == 503
    assert "ServiceNotReady" in response.text
    assert probe.call_count == 3
    assert not proxied.called


def test_upstream_error_status_is_passed_through(build_client, write_project):
    write_project("theta", port=4006)

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4006/").respond(200)
        mock.delete("http://127.0.0.1:4006/items/7").respond(404, text="no such item")

        with build_client() as client:
            response = client.delete("/items/7", headers={PROJECT_HEADER: "theta"})

    assert response.status_code == 404
    assert response.text == "no such item"


def test_chunked_body_is_replayed_with_length(build_client, write_project):
    write_project("iota", port=4007)

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4007/").respond(200)
        route = mock.post("http://127.0.0.1:4007/upload?kind=text").respond(201)

        with build_client() as client:
            response = client.post(
                "/upload?kind=text",
                content=iter([b"part-one;", b"part-two"]),
                headers={PROJECT_HEADER: "iota"},
            )

    assert response.status_code == 201
    sent = route.calls.last.request
    assert sent.content == b"part-one;part-two"
    assert sent.headers["content-length"] == "17"
    assert "transfer-encoding" not in sent.headers


def test_oversized_body_is_rejected_before_wake(build_client, fake_executor, write_project):
    write_project("kappa", port=4008)

    with build_client() as client:
        response = client.post("/", content=b"x" * 2048, headers={PROJECT_HEADER: "kappa"})

    assert response.status_code == 413
    assert fake_executor.calls == []


def test_proxy_connection_failure_is_bad_gateway(build_client, write_project):
    write_project("lambda", port=4009)

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4009/").respond(200)
        mock.get("http://127.0.0.1:4009/").mock(side_effect=httpx.ConnectError)

        with build_client() as client:
            response = client.get("/", headers={PROJECT_HEADER: "lambda"})

    assert response.status_code == 502
    assert "ProxyConnectionError" in response.text


def test_health_lists_recent_wakes(build_client, write_project):
    write_project("mu", port=4010)

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4010/").respond(200)
        mock.get("http://127.0.0.1:4010/").respond(200)

        with build_client() as client:
            client.get("/", headers={PROJECT_HEADER: "mu"})
            health = client.get("/_waker/health")

    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "ok"
    assert [(w["project"], w["state"], w["port"]) for w in body["wakes"]] == [
        ("mu", "awake", 4010)
    ]


def test_metrics_endpoint_reports_failures(build_client):
    with build_client() as client:
        client.get("/", headers={PROJECT_HEADER: "nu"})
        response = client.get("/_waker/metrics")

    assert response.status_code == 200
    data = response.json()
    assert set(data) == {"counters", "gauges", "timers", "projects"}
    assert any(key.startswith("requests_failed_total") for key in data["projects"]["nu"]["counters"])


def test_percent_encoded_path_is_replayed_verbatim(build_client, write_project):
    write_project("xi", port=4011)

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4011/").respond(200)
        route = mock.route(method="GET", host="127.0.0.1", port=4011).respond(200)

        with build_client() as client:
            client.get("/files/a%2Fb/what%3Fx?q=1", headers={PROJECT_HEADER: "xi"})
            client.get("/tag/c%23sharp", headers={PROJECT_HEADER: "xi"})

    assert [call.request.url.raw_path for call in route.calls] == [
        b"/files/a%2Fb/what%3Fx?q=1",
        b"/tag/c%23sharp",
    ]


def test_non_ascii_upstream_header_is_returned_as_sent(build_client, write_project):
    write_project("omicron", port=4012)
    disposition = 'attachment; filename="€.txt"'.encode("utf-8")

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4012/").respond(200)
        mock.get("http://127.0.0.1:4012/report").respond(
            200, content=b"report", headers=[(b"content-disposition", disposition)]
        )

        with build_client() as client:
            response = client.get("/report", headers={PROJECT_HEADER: "omicron"})

    assert response.status_code == 200
    assert response.content == b"report"
    assert (b"content-disposition", disposition) in response.headers.raw
