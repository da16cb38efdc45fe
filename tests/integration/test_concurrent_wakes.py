import asyncio

import httpx
import pytest
import respx

from waker.app import create_app
from waker.executor import ProcessResult

PROJECT_HEADER = "X-Pet-Sleep-Project"


def asgi_client(app):
    # respx only patches real network transports, so in-process ASGI calls pass through.
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://waker")


@pytest.mark.asyncio
async def test_simultaneous_requests_share_one_resume(waker_config, fake_executor, write_project):
    write_project("beta", port=4002)
    fake_executor.delay = 0.3
    app = create_app(waker_config, executor=fake_executor)

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4002/").respond(200)
        route = mock.get(url__regex=r"http://127\.0\.0\.1:4002/page/\d+").mock(
            side_effect=lambda request: httpx.Response(200, text=request.url.path)
        )

        async with asgi_client(app) as client:
            responses = await asyncio.gather(
                *[
                    client.get(f"/page/{i}", headers={PROJECT_HEADER: "beta"})
                    for i in range(10)
                ]
            )

    assert [r.status_code for r in responses] == [200] * 10
    assert [r.text for r in responses] == [f"/page/{i}" for i in range(10)]
    assert route.call_count == 10
    assert len(fake_executor.calls) == 1
    await app.state.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_simultaneous_failures_share_one_error(waker_config, fake_executor, write_project):
    write_project("epsilon", port=4003)
    fake_executor.delay = 0.2
    fake_executor.result = ProcessResult(exit_code=2, stdout="", stderr="port in use")
    app = create_app(waker_config, executor=fake_executor)

    async with asgi_client(app) as client:
        responses = await asyncio.gather(
            *[client.get("/", headers={PROJECT_HEADER: "epsilon"}) for _ in range(5)]
        )

    assert {r.status_code for r in responses} == {503}
    assert len({r.text for r in responses}) == 1
    assert "port in use" in responses[0].text
    assert len(fake_executor.calls) == 1
    await app.state.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_different_projects_wake_independently(waker_config, fake_executor, write_project):
    write_project("alpha", port=4001)
    write_project("beta", port=4002)
    fake_executor.delay = 0.1
    app = create_app(waker_config, executor=fake_executor)

    with respx.mock() as mock:
        mock.head("http://127.0.0.1:4001/").respond(200)
        mock.head("http://127.0.0.1:4002/").respond(200)
        mock.get("http://127.0.0.1:4001/").respond(200, text="alpha")
        mock.get("http://127.0.0.1:4002/").respond(200, text="beta")

        async with asgi_client(app) as client:
            alpha, beta = await asyncio.gather(
                client.get("/", headers={PROJECT_HEADER: "alpha"}),
                client.get("/", headers={PROJECT_HEADER: "beta"}),
            )

    assert (alpha.text, beta.text) == ("alpha", "beta")
    assert sorted(call["command"][-1] for call in fake_executor.calls) == ["alpha", "beta"]
    await app.state.orchestrator.shutdown()
