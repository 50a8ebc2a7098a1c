class RelayError(Exception):
    """Base error for failures that map onto a structured JSON response."""

    status_code = 500
    error = "Internal error"

    def __init__(self, message: str, **extra):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, **self.extra}


class MissingParameter(RelayError):
    status_code = 400
    error = "Missing parameter"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Missing {name} parameter", parameter=name)


class UpstreamUnavailable(RelayError):
    error = "Upstream unavailable"


class UpstreamHTTPError(RelayError):
    error = "Upstream HTTP error"

    def __init__(self, status: int):
        self.status = status
        super().__init__(f"Upstream responded with HTTP {status}", upstream_status=status)


class SourceTooLarge(RelayError):
    status_code = 413
    error = "File too large for transcoding"

    def __init__(self, size_mb: int, limit_mb: int, reason: str):
        self.size_mb = size_mb
        self.limit_mb = limit_mb
        super().__init__(reason, size=f"{size_mb} MB")


class ProbeFailed(RelayError):
    error = "Failed to get video info"


class TranscodeFailed(RelayError):
    error = "Transcoding failed"

    def __init__(self, message: str, pre_stream: bool = True):
        self.pre_stream = pre_stream
        super().__init__(message)


class InvalidUpstreamResponse(RelayError):
    error = "Invalid upstream response"
