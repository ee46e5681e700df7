"""
Exception hierarchy shared by the media providers, LLM clients and the tagging worker.
"""


class AquaForumError(Exception):
    """Base class for pipeline errors."""


class MediaError(AquaForumError):
    pass


class MediaUploadError(MediaError):
    """Upload failed after the provider's retry budget was spent."""


class TaggingError(AquaForumError):
    pass


class ServiceUnavailableError(TaggingError):
    """The LLM endpoint did not answer the availability probe."""


class LLMRequestError(TaggingError):
    """Transport failure after retries, an HTTP error status, or a non-JSON body."""


class ImageUnavailableError(TaggingError):
    """No readable image could be found or downloaded for a job."""
