"""
Media relay core.

- probe: bounded head buffering and PyAV metadata extraction
- policy: copy vs re-encode decision and the source size gate
- transcoder: ffmpeg session lifecycle, events and output streaming
- transcode_handler: request orchestrator for the media endpoints
"""
