"""
Error taxonomy shared by the cache, gateway, store and HTTP layer.

Each error carries the HTTP status the app answers with, so that validation
and not-found stay distinguishable from upstream or store failures.
"""


class ResponseError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(ResponseError):
    status_code = 400


class GeocodingFailed(ResponseError):
    status_code = 400


class Unauthenticated(ResponseError):
    status_code = 401


class Forbidden(ResponseError):
    status_code = 403


class NotFound(ResponseError):
    status_code = 404


class UpstreamUnavailable(ResponseError):
    status_code = 502


class StoreInconsistency(ResponseError):
    status_code = 500
