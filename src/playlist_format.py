"""M3U framing helpers: monitoring header injection and error playlists."""

from typing import Iterable, Optional

from models import PlaylistEndpoint

PLAYLIST_MARKER = "#EXTM3U"
MONITOR_TAG = "# m3u-mirror"
ERROR_TAG = "# m3u-mirror-error"

CONTENT_TYPES = {
    "m3u": "audio/x-mpegurl",
    "m3u8": "application/vnd.apple.mpegurl",
}
DEFAULT_CONTENT_TYPE = "application/vnd.apple.mpegurl"

# Byte order mark and whitespace some origins emit before the marker
_LEADING = "\ufeff \t\r\n"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def get_content_type(extension: Optional[str]) -> str:
    """Playlist media type for a mirror URL extension"""
    if not extension:
        return DEFAULT_CONTENT_TYPE
    return CONTENT_TYPES.get(extension.lower(), DEFAULT_CONTENT_TYPE)


def _single_line(value: str) -> str:
    # Newlines inside a directive would break the playlist structure
    return " ".join(str(value).split())


def monitoring_header(playlist: PlaylistEndpoint) -> str:
    return "\n".join([
        f"#PLAYLIST:{_single_line(playlist.name)}",
        f"{MONITOR_TAG}: {playlist.identifier}",
    ])


def starts_with_marker(body: str) -> bool:
    return body.lstrip(_LEADING)[:len(PLAYLIST_MARKER)].upper() == PLAYLIST_MARKER


def inject_monitoring_header(body: str, playlist: PlaylistEndpoint) -> str:
    """
    Add the monitoring block to an origin playlist.

    When the body starts with #EXTM3U the block goes right after that header
    line (keeping any attributes such as url-tvg), so the output still opens
    with exactly one marker. Otherwise the block is prepended as-is.
    """
    block = monitoring_header(playlist)

    if not starts_with_marker(body):
        return f"{block}\n{body}"

    stripped = body.lstrip(_LEADING)
    header_line, newline, rest = stripped.partition("\n")
    line_ending = "\r\n" if header_line.endswith("\r") else "\n"
    header_line = header_line.rstrip("\r")
    if line_ending == "\r\n":
        block = block.replace("\n", "\r\n")

    if not newline:
        return f"{header_line}{line_ending}{block}{line_ending}"
    return f"{header_line}{line_ending}{block}{line_ending}{rest}"


def render_error_playlist(title: str, lines: Iterable[str] = (), code: str = "error") -> str:
    """A syntactically valid playlist whose only content is diagnostic comments"""
    body = [
        PLAYLIST_MARKER,
        f"#PLAYLIST:{_single_line(title)}",
        f"{ERROR_TAG}: {code}",
    ]
    body.extend(f"# {_single_line(line)}" for line in lines)
    return "\n".join(body) + "\n"


def not_found_playlist(identifier: str) -> str:
    return render_error_playlist(
        "Playlist not found",
        [
            f"No playlist is registered under identifier {identifier}",
            "Check the mirror URL or ask the provider for a new one",
        ],
        code="not_found",
    )


def limit_exceeded_playlist(playlist: PlaylistEndpoint, active_devices: int) -> str:
    return render_error_playlist(
        "Device limit reached",
        [
            f"Maximum devices: {playlist.max_devices}",
            f"Active devices: {active_devices}",
            "Stop playback on another device and try again in a few minutes",
        ],
        code="limit_exceeded",
    )


def fetch_failure_playlist(playlist: PlaylistEndpoint, detail: str) -> str:
    return render_error_playlist(
        "Origin unavailable",
        [
            f"Could not fetch playlist {playlist.name} ({playlist.identifier})",
            f"Reason: {detail}",
        ],
        code="fetch_failure",
    )


def internal_error_playlist() -> str:
    return render_error_playlist(
        "Internal error",
        ["The mirror could not process this request"],
        code="internal_error",
    )
