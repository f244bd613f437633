"""
Error types raised by the scrapers, the range resolver and the service layer.
Each carries the HTTP status the API answers with.
"""


class MangaverseError(Exception):
    """Base class for every expected failure"""
    status_code = 500
    summary = "Failed to fetch manga data"


class NoResultsFound(MangaverseError):
    status_code = 404
    summary = "No results found"


class ChapterNotFound(MangaverseError):
    status_code = 404
    summary = "Chapter not found"


class InvalidRange(MangaverseError):
    status_code = 400
    summary = "Invalid chapter range"


class UnsupportedSource(MangaverseError):
    status_code = 400
    summary = "Unsupported source"


class UpstreamError(MangaverseError):
    """A site or API answered, but not with anything we could parse"""
    status_code = 502
    summary = "Upstream failure"
