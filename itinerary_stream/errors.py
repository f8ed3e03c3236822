from __future__ import annotations


class ItineraryError(Exception):
    """Base class for failures surfaced by the generation pipeline."""

    code = "itinerary_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RateLimited(ItineraryError):
    code = "rate_limited"
    status_code = 429
    retryable = True

    def __init__(self, message: str = "Rate limit exceeded. Please try again in a few minutes.") -> None:
        super().__init__(message)


class AuthInvalid(ItineraryError):
    code = "auth_invalid"
    status_code = 401

    def __init__(self, message: str = "Invalid OpenAI API key. Please check your API key configuration.") -> None:
        super().__init__(message)


class UpstreamUnavailable(ItineraryError):
    code = "upstream_unavailable"
    status_code = 503

    def __init__(self, message: str = "OpenAI service is temporarily unavailable. Please try again later.") -> None:
        super().__init__(message)


class UpstreamError(ItineraryError):
    code = "upstream_error"
    status_code = 502

    def __init__(self, status: int, reason: str = "") -> None:
        super().__init__(f"OpenAI API error: {status} - {reason}".rstrip(" -"))
        self.status = status


class StreamReadFailure(ItineraryError):
    code = "stream_read_failure"
    retryable = True

    def __init__(self, message: str = "Connection lost while reading the itinerary stream.") -> None:
        super().__init__(message)


class StreamTimeout(ItineraryError):
    code = "timeout"
    status_code = 504
    retryable = True

    def __init__(self, message: str = "Timed out waiting for the itinerary stream.") -> None:
        super().__init__(message)


class MalformedOutput(ItineraryError):
    code = "malformed_output"

    def __init__(self, truncated: bool, raw_prefix: str) -> None:
        details = (
            "Response was truncated due to length. Try a shorter trip duration."
            if truncated
            else "Invalid JSON format"
        )
        super().__init__(f"Failed to generate proper itinerary format. {details}")
        self.truncated = truncated
        self.raw_prefix = raw_prefix
        self.details = details


_BY_CODE: dict[str, type[ItineraryError]] = {
    cls.code: cls
    for cls in (RateLimited, AuthInvalid, UpstreamUnavailable, StreamReadFailure, StreamTimeout)
}


def classify_status(status: int, reason: str = "") -> ItineraryError:
    """Map a non-2xx HTTP status from the provider to a typed error."""
    if status == 429:
        return RateLimited()
    if status == 401:
        return AuthInvalid()
    if status == 500:
        return UpstreamUnavailable()
    return UpstreamError(status, reason)


def error_from_code(code: str | None, message: str, status: int = 502) -> ItineraryError:
    """Rebuild a typed error from the ``code`` carried by an error body or frame."""
    if code == UpstreamError.code:
        return UpstreamError(status)
    cls = _BY_CODE.get(code or "")
    if cls is None:
        return StreamReadFailure(message)
    return cls(message)
