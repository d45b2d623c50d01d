"""
Configuration settings related to the compress queue.

Image compression hunts for an encoder quality that lands near the target size,
while audio and video compression allocate a bitrate directly from the target
size and the duration. Both sets of constants live here.
"""

# --- Image quality search ---

# Starting point on the normalized 0-100 quality scale, per output format.
IMAGE_START_QUALITY = {"jpeg": 85, "webp": 80}
IMAGE_QUALITY_STEP_DOWN = 10
IMAGE_QUALITY_STEP_UP = 7
IMAGE_QUALITY_MIN = 10
IMAGE_QUALITY_MAX = 95
# Relative deviation from the target size that is accepted.
SIZE_TOLERANCE = 0.08
MAX_IMAGE_ATTEMPTS = 5

# mjpeg's -q:v runs from 2 (best) to 31 (worst).
MJPEG_QSCALE_MIN = 2
MJPEG_QSCALE_MAX = 31

IMAGE_FORMATS = ("jpeg", "webp")
DEFAULT_IMAGE_FORMAT = "jpeg"

# --- Bitrate allocation (kbps) ---

TOTAL_BITRATE_FLOOR = 200
VIDEO_BITRATE_FLOOR = 200
AUDIO_BITRATE_FLOOR = 32
# Headroom kept for video when the audio share is taken from a small total.
AUDIO_RESERVE_FOR_VIDEO = 64
DEFAULT_AUDIO_BITRATE_CEILING = 160

# Audio-only compress clamps the whole budget into this range.
AUDIO_ONLY_BITRATE_MIN = 64
AUDIO_ONLY_BITRATE_MAX = 320

VIDEO_CODEC = "libx264"
AUDIO_CODEC = "aac"
VIDEO_OUTPUT_EXT = "mp4"
AUDIO_OUTPUT_EXT = "m4a"

# Progress reported before the encoder starts producing timestamps.
ENCODE_START_PERCENT = 5
