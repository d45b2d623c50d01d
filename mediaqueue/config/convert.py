"""
Configuration settings related to the convert queue.
"""

DEFAULT_VIDEO_CRF = 22
DEFAULT_AUDIO_KBPS = 192
DEFAULT_IMAGE_QUALITY = 85

# Opus accepts a narrower bitrate range than the other lossy codecs.
OPUS_MIN_KBPS = 64
OPUS_MAX_KBPS = 256

GIF_FILTER = "fps=12,scale=480:-1:flags=lanczos"

# Progress shown for a video route when the duration is unknown.
UNKNOWN_DURATION_PERCENT = 10

# Suffix added to the output name when it would otherwise overwrite the input.
COLLISION_SUFFIX = " (converted)"
