"""Integration tests for HttpUploadBackend against a local aiohttp server."""

import pytest
import asyncio
from aiohttp import web
from aiohttp import test_utils

from scribelink.errors import BackendError, SessionNotFoundError
from scribelink.upload.http_backend import HttpUploadBackend


class SessionApi:
    """Minimal in-process version of the session API."""

    def __init__(self):
        self.sessions = {}
        self.objects = {}
        self.fail_presign = False
        self.response_delay = 0.0

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post('/api/v1/upload-session', self.upload_session)
        app.router.add_post('/api/v1/get-presigned-url', self.presigned_url)
        app.router.add_put('/storage/{session_id}/{chunk_id}', self.put_object)
        app.router.add_post('/api/v1/notify-chunk-uploaded', self.notify_uploaded)
        app.router.add_post('/api/v1/complete-session', self.complete_session)
        app.router.add_get('/api/v1/session/{session_id}', self.get_session)
        return app

    async def upload_session(self, request):
        body = await request.json()
        await asyncio.sleep(self.response_delay)
        session_id = f"sess-{len(self.sessions) + 1}"
        self.sessions[session_id] = {"patient": body["patientId"], "user": body["userId"],
                                     "status": "recording", "chunks": {}, "total": None}
        return web.json_response({"sessionId": session_id, "uploadUrl": "unused"})

    async def presigned_url(self, request):
        body = await request.json()
        if self.fail_presign:
            return web.json_response({"error": "storage offline"}, status=503)
        if body["sessionId"] not in self.sessions:
            return web.json_response({"error": "Session not found"}, status=404)
        url = request.url.with_path(f"/storage/{body['sessionId']}/{body['chunkId']}")
        return web.json_response({"presignedUrl": str(url)})

    async def put_object(self, request):
        assert request.headers["Content-Type"] == "audio/wav"
        key = (request.match_info["session_id"], request.match_info["chunk_id"])
        await asyncio.sleep(self.response_delay)
        self.objects[key] = await request.read()
        return web.Response(status=200)

    async def notify_uploaded(self, request):
        body = await request.json()
        session = self.sessions.get(body["sessionId"])
        if session is None:
            return web.json_response({"error": "Session not found"}, status=404)
        session["chunks"][body["chunkId"]] = {
            "chunk_id": body["chunkId"],
            "sequence_number": body["sequenceNumber"],
            "status": "uploaded",
            "checksum": body["checksum"],
        }
        return web.json_response({"success": True})

    async def complete_session(self, request):
        body = await request.json()
        session = self.sessions.get(body["sessionId"])
        if session is None:
            return web.json_response({"error": "Session not found"}, status=404)
        session["status"] = "completed"
        session["total"] = body["totalChunks"]
        return web.json_response({"success": True})

    async def get_session(self, request):
        session_id = request.match_info["session_id"]
        session = self.sessions.get(session_id)
        if session is None:
            return web.json_response({"error": "Session not found"}, status=404)
        chunks = list(session["chunks"].values())
        return web.json_response({
            "sessionId": session_id,
            "status": session["status"],
            "totalChunks": session["total"] or len(chunks),
            "uploadedChunks": len(chunks),
            "chunks": chunks,
        })


def run_against_api(api: SessionApi, scenario, request_timeout: float = 5.0):
    """Start the API on a free port and run scenario(backend)."""
    async def _run():
        async with test_utils.TestServer(api.build_app()) as server:
            backend = HttpUploadBackend(str(server.make_url('/api')), request_timeout=request_timeout)
            return await scenario(backend)
    return asyncio.run(_run())


@pytest.mark.integration
class TestHttpUploadBackend:
    """Test cases for the session API client."""

    def test_full_handshake(self):
        api = SessionApi()

        async def scenario(backend):
            session_id = await backend.create_session("patient-1", "user-1")
            destination = await backend.reserve_upload_destination(session_id, "chunk-a", 0)
            await backend.transfer(destination, b'RIFF....WAVE')
            await backend.confirm_uploaded(session_id, "chunk-a", 0, "abc123")
            await backend.confirm_uploaded(session_id, "chunk-a", 0, "abc123")
            confirmed = await backend.fetch_confirmed_segments(session_id)
            await backend.complete_session(session_id, 1)
            return session_id, confirmed

        session_id, confirmed = run_against_api(api, scenario)

        assert api.sessions[session_id]["patient"] == "patient-1"
        assert api.objects[(session_id, "chunk-a")] == b'RIFF....WAVE'
        assert api.sessions[session_id]["chunks"]["chunk-a"]["checksum"] == "abc123"
        assert confirmed == ["chunk-a"]
        assert api.sessions[session_id]["status"] == "completed"
        assert api.sessions[session_id]["total"] == 1

    def test_unknown_session_on_reserve(self):
        async def scenario(backend):
            with pytest.raises(SessionNotFoundError):
                await backend.reserve_upload_destination("missing", "chunk-a", 0)

        run_against_api(SessionApi(), scenario)

    def test_server_error_is_backend_error(self):
        api = SessionApi()
        api.fail_presign = True

        async def scenario(backend):
            session_id = await backend.create_session("patient-1", "user-1")
            with pytest.raises(BackendError) as excinfo:
                await backend.reserve_upload_destination(session_id, "chunk-a", 0)
            assert not isinstance(excinfo.value, SessionNotFoundError)
            assert excinfo.value.status == 503

        run_against_api(api, scenario)

    def test_connection_refused_is_backend_error(self):
        backend = HttpUploadBackend("http://127.0.0.1:9/api", request_timeout=2.0)

        with pytest.raises(BackendError):
            asyncio.run(backend.create_session("patient-1", "user-1"))

    def test_display_info(self):
        backend = HttpUploadBackend("http://localhost:3000/api/")

        assert backend.get_display_info() == {"backend": "http", "base_url": "http://localhost:3000/api",
                                              "api_version": "v1"}

    def test_slow_server_is_backend_error(self):
        """A request outliving the client timeout surfaces as BackendError, not a bare timeout."""
        api = SessionApi()

        async def scenario(backend):
            with pytest.raises(BackendError):
                await backend.create_session("patient-1", "user-1")

        api.response_delay = 2.0
        run_against_api(api, scenario, request_timeout=0.3)

    def test_slow_transfer_is_backend_error(self):
        api = SessionApi()

        async def scenario(backend):
            session_id = await backend.create_session("patient-1", "user-1")
            destination = await backend.reserve_upload_destination(session_id, "chunk-a", 0)
            api.response_delay = 2.0
            with pytest.raises(BackendError):
                await backend.transfer(destination, b'RIFF....WAVE')

        run_against_api(api, scenario, request_timeout=0.3)
