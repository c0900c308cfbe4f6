"""HTTP-level tests for the FastAPI front."""

from __future__ import annotations

import asyncio
import unittest
from urllib.parse import urlencode

from fastapi.testclient import TestClient

from cosyvoice_bridge.api.service.app import AUTH_HEADER, create_app
from cosyvoice_bridge.api.service.settings import ServiceSettings, Settings, SynthesisDefaults, UpstreamSettings
from upstream_fakes import FakeConnector, cosyvoice_script, silent_script, wait_until


def _settings(token=None, timeout: float = 2.0) -> Settings:
    return Settings(
        service=ServiceSettings(shared_token=token, request_timeout_seconds=timeout),
        upstream=UpstreamSettings(api_key="sk-test", pool_capacity=2, poll_interval_seconds=0.001),
        defaults=SynthesisDefaults(),
    )


class BridgeAppTests(unittest.TestCase):
    def _client(self, script=None, token="secret", timeout: float = 2.0) -> TestClient:
        self.connector = FakeConnector(script or cosyvoice_script([b"RIFF", b"data"]))
        app = create_app(_settings(token=token, timeout=timeout), connect=self.connector)
        client = TestClient(app)
        client.__enter__()
        self.addCleanup(client.__exit__, None, None, None)
        return client

    def test_requests_without_shared_secret_are_rejected(self) -> None:
        client = self._client()

        self.assertEqual(401, client.get("/healthz").status_code)
        response = client.get("/tts/stream", params={"text": "hello"}, headers={AUTH_HEADER: "wrong"})

        self.assertEqual(401, response.status_code)
        self.assertEqual("Unauthorized", response.text)
        self.assertEqual([], self.connector.calls)

    def test_healthz_reports_pool_and_counters(self) -> None:
        client = self._client()

        response = client.get("/healthz", headers={AUTH_HEADER: "secret"})

        self.assertEqual(200, response.status_code)
        data = response.json()
        self.assertTrue(data["ok"])
        self.assertEqual(2, data["pool"]["capacity"])
        self.assertEqual(0, data["requests"]["active_requests"])

    def test_stream_returns_audio(self) -> None:
        client = self._client()

        response = client.get("/tts/stream", params={"text": "hello"}, headers={AUTH_HEADER: "secret"})

        self.assertEqual(200, response.status_code)
        self.assertEqual("audio/mpeg", response.headers["content-type"])
        self.assertEqual("no-store", response.headers["cache-control"])
        self.assertEqual(b"RIFFdata", response.content)
        sent = self.connector.connections[0].sent
        self.assertEqual("bearer sk-test", self.connector.calls[0][1]["additional_headers"]["Authorization"])
        self.assertEqual(["run-task", "continue-task", "finish-task"], [m["header"]["action"] for m in sent])

        health = client.get("/healthz", headers={AUTH_HEADER: "secret"}).json()
        self.assertEqual(1, health["requests"]["request_count"])
        self.assertEqual(0, health["requests"]["active_requests"])
        self.assertEqual(1, health["pool"]["idle"])

    def test_pcm_format_sets_l16_content_type(self) -> None:
        client = self._client()

        response = client.get("/tts/stream", params={"text": "hello", "format": "pcm"}, headers={AUTH_HEADER: "secret"})

        self.assertEqual(200, response.status_code)
        self.assertEqual("audio/L16", response.headers["content-type"])
        parameters = self.connector.connections[0].sent[0]["payload"]["parameters"]
        self.assertEqual("pcm", parameters["format"])

    def test_missing_text_is_400(self) -> None:
        client = self._client()

        response = client.get("/tts/stream", params={"text": "  "}, headers={AUTH_HEADER: "secret"})

        self.assertEqual(400, response.status_code)
        self.assertEqual("Missing text", response.text)
        self.assertEqual([], self.connector.calls)

    def test_upstream_failure_is_502(self) -> None:
        client = self._client(cosyvoice_script(fail=True))

        response = client.get("/tts/stream", params={"text": "hello"}, headers={AUTH_HEADER: "secret"})

        self.assertEqual(502, response.status_code)
        self.assertEqual(b"", response.content)

    def test_silent_upstream_is_504(self) -> None:
        client = self._client(silent_script, timeout=0.05)

        response = client.get("/tts/stream", params={"text": "hello"}, headers={AUTH_HEADER: "secret"})

        self.assertEqual(504, response.status_code)
        self.assertEqual(b"", response.content)
        health = client.get("/healthz", headers={AUTH_HEADER: "secret"}).json()
        self.assertEqual(0, health["requests"]["active_requests"])
        self.assertEqual(1, health["pool"]["idle"])

    def test_auth_is_skipped_without_configured_token(self) -> None:
        client = self._client(token=None)

        response = client.get("/tts/stream", params={"text": "hello", "voice": "longwan"})

        self.assertEqual(200, response.status_code)
        parameters = self.connector.connections[0].sent[0]["payload"]["parameters"]
        self.assertEqual("longwan", parameters["voice"])


class AsgiPeer:
    """Drives the app over raw ASGI so the test decides when the client goes away."""

    def __init__(self) -> None:
        self.messages = []
        self.gone = asyncio.Event()
        self._request_sent = False

    async def receive(self) -> dict:
        if not self._request_sent:
            self._request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self.gone.wait()
        return {"type": "http.disconnect"}

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def body(self) -> bytes:
        return b"".join(m.get("body", b"") for m in self.messages if m["type"] == "http.response.body")

    def status(self):
        starts = [m["status"] for m in self.messages if m["type"] == "http.response.start"]
        return starts[0] if starts else None


def _scope(params: dict) -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/tts/stream",
        "raw_path": b"/tts/stream",
        "root_path": "",
        "query_string": urlencode(params).encode(),
        "headers": [(b"host", b"testserver")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }


class StreamCancellationTests(unittest.IsolatedAsyncioTestCase):
    def _app(self, script, timeout: float = 5.0):
        self.connector = FakeConnector(script)
        app = create_app(_settings(timeout=timeout), connect=self.connector)
        self.addAsyncCleanup(app.state.pool.aclose)
        return app

    async def test_client_leaving_mid_stream_releases_the_session(self) -> None:
        app = self._app(cosyvoice_script([b"first"], finish=False))
        peer = AsgiPeer()

        call = asyncio.create_task(app(_scope({"text": "hello"}), peer.receive, peer.send))
        await wait_until(lambda: peer.body() == b"first")
        peer.gone.set()
        await asyncio.wait_for(call, timeout=1.0)

        self.assertEqual(200, peer.status())
        self.assertEqual(0, app.state.counters.active_requests)
        self.assertEqual(1, app.state.counters.completed)
        self.assertEqual(1, app.state.pool.stats()["idle"])

    async def test_client_leaving_before_audio_releases_the_session(self) -> None:
        app = self._app(silent_script)
        peer = AsgiPeer()

        call = asyncio.create_task(app(_scope({"text": "hello"}), peer.receive, peer.send))
        await wait_until(lambda: app.state.pool.stats()["leased"] == 1)
        peer.gone.set()
        await asyncio.wait_for(call, timeout=1.0)

        self.assertEqual(b"", peer.body())
        self.assertEqual(0, app.state.counters.active_requests)
        self.assertEqual(1, app.state.pool.stats()["idle"])
        self.assertEqual(["run-task"], self.connector.connections[0].actions())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
