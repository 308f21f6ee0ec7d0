"""HLS master playlist assembly."""

from typing import Sequence

from abrpack.domain.models import Rendition

PLAYLIST_NAME = "playlist.m3u8"
MASTER_NAME = "master.m3u8"


def sub_manifest_path(rendition: Rendition) -> str:
    return f"{rendition.height}p/{PLAYLIST_NAME}"


def build_master_manifest(renditions: Sequence[Rendition]) -> str:
    """Returns the master playlist listing ``renditions`` in the given order.

    Players treat the listing order as a quality hint, so callers pass the
    ladder in its declared order, never in completion order.
    """
    if not renditions:
        raise ValueError("master manifest needs at least one rendition")

    lines = ["#EXTM3U", "#EXT-X-VERSION:3", ""]
    for rendition in renditions:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bandwidth},RESOLUTION={rendition.resolution}"
        )
        lines.append(sub_manifest_path(rendition))
    return "\n".join(lines) + "\n"
