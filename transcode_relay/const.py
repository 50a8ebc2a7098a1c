SERVICE_VERSION = "1.0.0"

STREAM_RESPONSE_HEADERS = {
    "content-type": "video/mp4",
    "accept-ranges": "bytes",
    "cache-control": "no-cache",
}

# Keys emitted by ffmpeg's -progress output
PROGRESS_KEYS = (
    "frame",
    "fps",
    "bitrate",
    "total_size",
    "out_time_us",
    "out_time_ms",
    "out_time",
    "dup_frames",
    "drop_frames",
    "speed",
    "progress",
)
