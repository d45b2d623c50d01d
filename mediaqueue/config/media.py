"""
Extension tables used to classify input and output files.

Classification is purely by extension; anything that is neither a known image
nor a known audio extension is treated as video, the way the encoder expects it.
"""

IMAGE_EXTENSIONS = (
    "jpg", "jpeg", "png", "bmp", "tiff", "tif", "gif", "webp", "heic", "heif",
)

AUDIO_EXTENSIONS = ("mp3", "wav", "aac", "m4a", "flac", "ogg", "opus")

# Containers the convert queue can write a video (or audio-as-video) into.
VIDEO_CONTAINER_EXTENSIONS = ("mp4", "mkv", "mov", "webm", "gif")
