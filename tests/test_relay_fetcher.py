import asyncio
import time

import httpx
import pytest
from unittest.mock import patch

from errors import FetchFailure
from playlist_format import MONITOR_TAG
from relay_fetcher import RelayFetcher, classify_content_type

ORIGIN_BODY = """#EXTM3U url-tvg="http://epg.example.com/guide.xml"
#EXTINF:-1 tvg-id="news.example" group-title="News",News HD
http://streams.example.com/news/index.m3u8
#EXTINF:-1 tvg-id="sports.example" group-title="Sports",Sports 1
http://streams.example.com/sports/index.m3u8
"""


def make_fetcher(handler) -> RelayFetcher:
    return RelayFetcher(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def playlist_response(body: str, content_type: str = "audio/x-mpegurl", status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=body, headers={"content-type": content_type})
    return handler


class TestContentTypeClassification:
    def test_playlist_types_are_text(self):
        assert classify_content_type("application/vnd.apple.mpegurl") == "text"
        assert classify_content_type("audio/x-mpegurl; charset=utf-8") == "text"
        assert classify_content_type("text/plain") == "text"

    def test_generic_types_are_ambiguous(self):
        assert classify_content_type(None) == "ambiguous"
        assert classify_content_type("application/octet-stream") == "ambiguous"

    def test_media_types_are_binary(self):
        assert classify_content_type("video/mp2t") == "binary"
        assert classify_content_type("image/png") == "binary"
        assert classify_content_type("application/json") == "binary"


class TestRelaySuccess:
    @pytest.mark.asyncio
    async def test_marker_kept_once_with_monitoring_header(self, playlist):
        fetcher = make_fetcher(playlist_response(ORIGIN_BODY))

        result = await fetcher.relay(playlist, "TestPlayer/1.0")

        assert result.content.count("#EXTM3U") == 1
        assert result.content.count(MONITOR_TAG) == 1
        lines = result.content.splitlines()
        assert lines[0] == '#EXTM3U url-tvg="http://epg.example.com/guide.xml"'
        assert lines[1] == "#PLAYLIST:Family Channels"
        assert lines[2] == f"{MONITOR_TAG}: {playlist.identifier}"
        # Everything after the header line is relayed verbatim
        assert result.content.endswith(ORIGIN_BODY.split("\n", 1)[1])
        assert result.origin_status == 200

    @pytest.mark.asyncio
    async def test_body_without_marker_gets_header_prepended(self, playlist):
        body = "#EXTINF:-1,News\nhttp://streams.example.com/news.ts\n"
        fetcher = make_fetcher(playlist_response(body, "text/plain"))

        result = await fetcher.relay(playlist)

        assert result.content.startswith("#PLAYLIST:Family Channels\n")
        assert result.content.endswith(body)
        assert "#EXTM3U" not in result.content

    @pytest.mark.asyncio
    async def test_octet_stream_accepted_when_body_is_a_playlist(self, playlist):
        fetcher = make_fetcher(playlist_response(ORIGIN_BODY, "application/octet-stream"))
        result = await fetcher.relay(playlist)
        assert result.content.startswith("#EXTM3U")

    @pytest.mark.asyncio
    async def test_forwards_client_user_agent(self, playlist):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers.get("user-agent")
            seen["url"] = str(request.url)
            return httpx.Response(200, text=ORIGIN_BODY,
                                  headers={"content-type": "audio/x-mpegurl"})

        fetcher = make_fetcher(handler)
        await fetcher.relay(playlist, "Roku/DVP-12.0")

        assert seen["ua"] == "Roku/DVP-12.0"
        assert seen["url"] == playlist.origin_url

    @pytest.mark.asyncio
    async def test_default_user_agent_without_client_signature(self, playlist):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers.get("user-agent")
            return httpx.Response(200, text=ORIGIN_BODY,
                                  headers={"content-type": "audio/x-mpegurl"})

        fetcher = make_fetcher(handler)
        with patch("relay_fetcher.settings.ORIGIN_USER_AGENT", "M3U-Mirror/1.0"):
            await fetcher.relay(playlist, "")

        assert seen["ua"] == "M3U-Mirror/1.0"


class TestRelayFailures:
    @pytest.mark.asyncio
    async def test_timeout(self, playlist):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(FetchFailure) as exc_info:
            await make_fetcher(handler).relay(playlist)

        assert "timed out" in exc_info.value.detail
        assert isinstance(exc_info.value.cause, httpx.ReadTimeout)

    @pytest.mark.asyncio
    async def test_connection_error(self, playlist):
        def handler(request):
            raise httpx.ConnectError("DNS resolution failed", request=request)

        with pytest.raises(FetchFailure) as exc_info:
            await make_fetcher(handler).relay(playlist)

        assert "ConnectError" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_http_error_status(self, playlist):
        fetcher = make_fetcher(playlist_response("Forbidden", "text/plain", status=403))

        with pytest.raises(FetchFailure) as exc_info:
            await fetcher.relay(playlist)

        assert "403" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_binary_content_type(self, playlist):
        fetcher = make_fetcher(playlist_response("\x47\x40\x00", "video/mp2t"))
        with pytest.raises(FetchFailure):
            await fetcher.relay(playlist)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["", "   \n\n"])
    async def test_empty_body(self, playlist, body):
        fetcher = make_fetcher(playlist_response(body))
        with pytest.raises(FetchFailure) as exc_info:
            await fetcher.relay(playlist)
        assert "empty" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_octet_stream_without_marker(self, playlist):
        fetcher = make_fetcher(playlist_response("PK\x03\x04 not a playlist", "application/octet-stream"))
        with pytest.raises(FetchFailure):
            await fetcher.relay(playlist)

    @pytest.mark.asyncio
    async def test_no_retry_on_failure(self, playlist):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(FetchFailure):
            await make_fetcher(handler).relay(playlist)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_slow_origin_is_cut_off_at_overall_timeout(self, playlist):
        async def trickle():
            yield b"#EXTM3U\n"
            for n in range(20):
                # Each chunk arrives well inside any per-read timeout
                await asyncio.sleep(0.1)
                yield f"#EXTINF:-1,Channel {n}\nhttp://streams.example.com/{n}.ts\n".encode()

        def handler(request):
            return httpx.Response(200, headers={"content-type": "audio/x-mpegurl"},
                                  content=trickle())

        fetcher = make_fetcher(handler)
        started = time.monotonic()
        with patch("relay_fetcher.settings.ORIGIN_TIMEOUT", 0.5):
            with pytest.raises(FetchFailure) as exc_info:
                await fetcher.relay(playlist)

        assert time.monotonic() - started < 1.5
        assert "timed out after 0.5s" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_oversized_body(self, playlist):
        body = "#EXTM3U\n" + "#EXTINF:-1,Channel\nhttp://streams.example.com/a.ts\n" * 100
        fetcher = make_fetcher(playlist_response(body))

        with patch("relay_fetcher.settings.ORIGIN_MAX_BYTES", 1024):
            with pytest.raises(FetchFailure) as exc_info:
                await fetcher.relay(playlist)

        assert "exceeds 1024 bytes" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_body_at_size_limit_is_accepted(self, playlist):
        fetcher = make_fetcher(playlist_response(ORIGIN_BODY))
        with patch("relay_fetcher.settings.ORIGIN_MAX_BYTES", len(ORIGIN_BODY.encode())):
            result = await fetcher.relay(playlist)
        assert result.content.startswith("#EXTM3U")
