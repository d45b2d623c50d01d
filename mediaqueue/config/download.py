"""
Configuration settings related to the download queue.

This module defines the fetcher's progress template, the format selectors used
for each quality tier, and the rules that decide when a fetched video has to be
re-encoded for compatibility.
"""

# The tag our progress template writes in front of every structured line. Lines
# starting with it are parsed before any of the heuristic patterns.
PROGRESS_TAG = "[MQPROGRESS]"

# yt-dlp progress template: percent|downloaded bytes|total bytes|speed|eta.
PROGRESS_TEMPLATE = (
    f"{PROGRESS_TAG} %(progress._percent_str)s|%(progress.downloaded_bytes)s|"
    "%(progress.total_bytes)s|%(progress._speed_str)s|%(progress._eta_str)s"
)

# Parallel fragment downloads per fetch.
FETCH_CONCURRENT_FRAGMENTS = 16

VIDEO_OUTPUT_EXT = "mp4"
AUDIO_OUTPUT_EXT = "m4a"

# Quality tiers accepted in a download payload.
QUALITY_TIERS = ("best", "8k", "4k", "2k", "1080p", "720p", "480p", "360p", "240p")

# Tiers above 1080p take whatever codec the site has at that height.
HIGH_RES_SELECTORS = {
    "8k": "bestvideo[height>=4320]+bestaudio/best",
    "4k": "bestvideo[height>=2160]+bestaudio/best",
    "2k": "bestvideo[height>=1440]+bestaudio/best",
}

# Tiers up to 1080p prefer H.264 in MP4, then any non-AV1 MP4, then any MP4.
CAPPED_HEIGHTS = {
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
    "360p": 360,
    "240p": 240,
}

BEST_SELECTOR = "bestvideo+bestaudio/best"

# Sources at or below this height are re-encoded to H.264 if they arrive in
# another codec.
RECODE_MAX_HEIGHT = 1080
COMPATIBLE_VIDEO_CODEC_PREFIXES = ("avc1", "h264")

RECODE_VIDEO_ARGS = [
    "-c:v", "libx264", "-pix_fmt", "yuv420p", "-preset", "veryfast",
    "-c:a", "aac", "-movflags", "+faststart",
]
