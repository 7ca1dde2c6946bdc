"""
Media-aware search tuning.

Queries that talk about a video or audio recording are answered from
transcript chunks, which score lower against short questions than prose does.
Such queries get a wider candidate pool and a lower similarity threshold.
"""

# Standard library
from typing import NamedTuple, Optional

DEFAULT_TOP_K = 10
DEFAULT_THRESHOLD = 0.3
MEDIA_TOP_K = 20
MEDIA_THRESHOLD = 0.2

VIDEO_KEYWORDS_VI = [
    "video", "clip", "phim", "hình ảnh", "xem",
    "tóm tắt video", "nội dung video", "trong video", "về video",
]
AUDIO_KEYWORDS_VI = [
    "audio", "âm thanh", "giọng nói", "nghe", "podcast",
    "ghi âm", "trong audio", "về audio",
]
VIDEO_KEYWORDS_EN = [
    "video", "clip", "watch", "footage", "movie", "scene", "visual",
    "in the video", "about the video", "summarize video", "video content",
]
AUDIO_KEYWORDS_EN = [
    "audio", "sound", "voice", "listen", "podcast", "recording", "speech",
    "in the audio", "about the audio",
]

_VIDEO_KEYWORDS = VIDEO_KEYWORDS_VI + VIDEO_KEYWORDS_EN
_AUDIO_KEYWORDS = AUDIO_KEYWORDS_VI + AUDIO_KEYWORDS_EN


class SearchParams(NamedTuple):
    """Effective search parameters for one query."""
    top_k: int
    threshold: float
    media_type: Optional[str] = None  # "video" | "audio" | None


def detect_media_query(query: str) -> Optional[str]:
    """
    Return ``"video"`` or ``"audio"`` when the query mentions one, else None.

    Plain substring match on the lower-cased query; video wins when both
    match.
    """
    lowered = query.lower()
    if any(keyword in lowered for keyword in _VIDEO_KEYWORDS):
        return "video"
    if any(keyword in lowered for keyword in _AUDIO_KEYWORDS):
        return "audio"
    return None


def resolve_search_params(query: str, top_k: int = DEFAULT_TOP_K) -> SearchParams:
    """Widen ``top_k`` and lower the threshold for media queries."""
    media_type = detect_media_query(query)
    if media_type:
        return SearchParams(max(top_k, MEDIA_TOP_K), MEDIA_THRESHOLD, media_type)
    return SearchParams(top_k, DEFAULT_THRESHOLD, None)
