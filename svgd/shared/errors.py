#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error taxonomy for the query-and-render pipeline.

Every error that may reach a client carries a stable machine-readable code and
the HTTP status the chart server answers with.
"""
from __future__ import annotations


class QueryError(Exception):
    """Base class for failures surfaced to the client"""
    code = "internal_error"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> dict:
        return {"error": self.code, "message": self.message}


class BadRequest(QueryError):
    code = "bad_request"
    http_status = 400


class UnknownEndpoint(QueryError):
    code = "unknown_endpoint"
    http_status = 404


class MissingParameter(QueryError):
    code = "missing_parameter"
    http_status = 400


class InvalidParameter(QueryError):
    code = "invalid_parameter"
    http_status = 400


class FetchError(QueryError):
    """Base class for everything that prevents usable samples from being fetched"""
    code = "fetch_error"
    http_status = 502


class NoArchiveData(FetchError):
    code = "no_archive_data"
    http_status = 404


class BackendUnavailable(FetchError):
    code = "backend_unavailable"
    http_status = 503


class EmptyResult(FetchError):
    code = "empty_result"
    http_status = 404


class RenderError(QueryError):
    code = "render_error"
    http_status = 500


class RequestTimeout(QueryError):
    code = "timeout"
    http_status = 504


# Backend-level errors. These never leave the fetcher: it retries, falls back,
# and finally converts them into one of the FetchError subclasses above.

class BackendError(Exception):
    """Base exception for archive backend operations"""
    pass


class BackendConnectionError(BackendError):
    """Connection-related errors (retryable)"""
    pass


class BackendProtocolError(BackendError):
    """The backend answered with an error status or an unparseable payload"""
    pass


class ArchiveNotFoundError(BackendError):
    """The archive file does not exist (not retryable)"""
    pass


class BackendNotInstalledError(BackendError):
    """The backend's client library is not importable (not retryable)"""
    pass
