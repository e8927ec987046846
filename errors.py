"""
Exception hierarchy shared by the API, the worker and the client library.
Each error carries the HTTP status the API answers with.
"""

from typing import Optional


class TalkingFiguresError(Exception):
    """base exception for talking-figures errors"""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InputValidationError(TalkingFiguresError):
    """raised when a request is missing a required field"""

    status_code = 400


class NotFoundError(TalkingFiguresError):
    status_code = 404


class ProviderError(TalkingFiguresError):
    """raised when a third-party API answers with a non-2xx status"""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class QuotaExceededError(ProviderError):
    status_code = 402


class RateLimitedError(ProviderError):
    status_code = 429


class ProviderResponseError(ProviderError):
    """raised when a provider response does not match any known shape"""


class MediaFetchError(TalkingFiguresError):
    """raised when an input image or audio cannot be retrieved"""


class AudioParseError(TalkingFiguresError):
    """raised when an audio payload is not a decodable data URL"""

    status_code = 400


class StorageError(TalkingFiguresError):
    """raised when writing to the object storage bucket fails"""


class StreamProtocolError(TalkingFiguresError):
    """raised when a websocket message does not match the avatar stream protocol"""

    status_code = 400


class TalkingVideoError(TalkingFiguresError):
    """raised by the client when the video API call fails"""


def provider_error_for_status(status: int, message: str) -> ProviderError:
    """map an upstream status code onto the domain error for it"""
    if status == 402:
        return QuotaExceededError(message, upstream_status=status)
    if status == 429:
        return RateLimitedError(message, upstream_status=status)
    return ProviderError(message, upstream_status=status)
