"""Tests for ollama_steward.transport and error mapping."""

import httpx
import pytest
import respx

from tests.conftest import MOCK_API_URL, MOCK_MODEL, MOCK_STREAM_LINES, MOCK_TAGS_RESPONSE, ndjson


class TestTransportJson:
    """Tests for JSON GET/POST."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_get_json_success(self, transport):
        """Test GET decodes a 200 JSON body."""
        respx.get(f"{MOCK_API_URL}/api/tags").mock(
            return_value=httpx.Response(200, json=MOCK_TAGS_RESPONSE)
        )

        data = await transport.get_json("/api/tags")
        assert data["models"][0]["name"] == MOCK_MODEL

    @respx.mock
    @pytest.mark.asyncio
    async def test_connect_error_maps_to_connection_refused(self, transport):
        """Test httpx.ConnectError becomes ConnectionRefused."""
        from ollama_steward.errors import ConnectionRefused

        respx.get(f"{MOCK_API_URL}/api/tags").mock(
            side_effect=httpx.ConnectError("Connection refused")
        )

        with pytest.raises(ConnectionRefused):
            await transport.get_json("/api/tags")

    @respx.mock
    @pytest.mark.asyncio
    async def test_timeout_maps_to_connection_timeout(self, transport):
        """Test httpx timeouts become ConnectionTimeout."""
        from ollama_steward.errors import ConnectionTimeout

        respx.get(f"{MOCK_API_URL}/api/tags").mock(
            side_effect=httpx.ReadTimeout("read timed out")
        )

        with pytest.raises(ConnectionTimeout):
            await transport.get_json("/api/tags")

    @respx.mock
    @pytest.mark.asyncio
    async def test_http_error_carries_server_message(self, transport):
        """Test a non-200 status raises ServerError with the body's error."""
        from ollama_steward.errors import ServerError

        respx.post(f"{MOCK_API_URL}/api/generate").mock(
            return_value=httpx.Response(500, json={"error": "out of memory"})
        )

        with pytest.raises(ServerError) as exc_info:
            await transport.post_json("/api/generate", {"model": MOCK_MODEL})
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "out of memory"

    @respx.mock
    @pytest.mark.asyncio
    async def test_invalid_json_is_malformed(self, transport):
        """Test an undecodable body raises MalformedResponse."""
        from ollama_steward.errors import MalformedResponse

        respx.get(f"{MOCK_API_URL}/api/tags").mock(
            return_value=httpx.Response(200, content=b"<html>proxy</html>")
        )

        with pytest.raises(MalformedResponse):
            await transport.get_json("/api/tags")

    @respx.mock
    @pytest.mark.asyncio
    async def test_probe_returns_status(self, transport):
        """Test probe reports the status code without raising on errors."""
        respx.get(f"{MOCK_API_URL}/api/tags").mock(return_value=httpx.Response(503))

        assert await transport.probe() == 503


class TestTransportStream:
    """Tests for NDJSON streaming."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_stream_yields_objects_in_order(self, transport):
        """Test each NDJSON line is yielded in arrival order."""
        respx.post(f"{MOCK_API_URL}/api/generate").mock(
            return_value=httpx.Response(200, content=ndjson(MOCK_STREAM_LINES))
        )

        lines = [line async for line in transport.stream_ndjson("/api/generate", {}, timeout=5.0)]
        assert [line["response"] for line in lines] == ["The", " capital", " is", " Paris.", ""]

    @respx.mock
    @pytest.mark.asyncio
    async def test_stream_skips_bad_lines(self, transport):
        """Test unparsable and non-object lines are skipped, not fatal."""
        body = ndjson([
            {"response": "a", "done": False},
            "{not json",
            "[1, 2]",
            {"response": "b", "done": True},
        ])
        respx.post(f"{MOCK_API_URL}/api/generate").mock(
            return_value=httpx.Response(200, content=body)
        )

        lines = [line async for line in transport.stream_ndjson("/api/generate", {}, timeout=5.0)]
        assert [line["response"] for line in lines] == ["a", "b"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_stream_error_status(self, transport):
        """Test an error status raises ServerError before any line."""
        from ollama_steward.errors import ServerError

        respx.post(f"{MOCK_API_URL}/api/generate").mock(
            return_value=httpx.Response(404, json={"error": "model 'x' not found"})
        )

        with pytest.raises(ServerError) as exc_info:
            async for _ in transport.stream_ndjson("/api/generate", {}, timeout=5.0):
                pass
        assert exc_info.value.status_code == 404
        assert "not found" in exc_info.value.message

    @respx.mock
    @pytest.mark.asyncio
    async def test_stream_stops_when_cancelled(self, transport):
        """Test a cancelled token discards the remaining lines."""
        from ollama_steward.tracker import CancelToken

        respx.post(f"{MOCK_API_URL}/api/generate").mock(
            return_value=httpx.Response(200, content=ndjson(MOCK_STREAM_LINES))
        )
        token = CancelToken("r1")

        seen = []
        async for line in transport.stream_ndjson("/api/generate", {}, timeout=5.0, token=token):
            seen.append(line["response"])
            token.cancel()
        assert seen == ["The"]


class TestFormatError:
    """Tests for operator-facing error messages."""

    def test_timeout_quotes_seconds(self):
        """Test timeout messages include the configured timeout."""
        from ollama_steward.errors import ConnectionTimeout, format_error

        message = format_error(ConnectionTimeout("slow"), timeout_seconds=300)
        assert "300s" in message

    def test_connection_refused(self):
        """Test connection refused advice."""
        from ollama_steward.errors import ConnectionRefused, format_error

        assert "Make sure Ollama server is running" in format_error(ConnectionRefused("x"))

    def test_server_error_status(self):
        """Test server errors quote the status."""
        from ollama_steward.errors import ServerError, format_error

        assert "Status: 404" in format_error(ServerError(404))
        assert "Status: 500" in format_error(ServerError(500, "boom"))

    def test_unknown_exception(self):
        """Test foreign exceptions are labelled unknown."""
        from ollama_steward.errors import format_error

        assert format_error(RuntimeError("odd")) == "Unknown error: odd"
