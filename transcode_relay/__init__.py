from transcode_relay.const import SERVICE_VERSION as __version__

__all__ = ["__version__"]
