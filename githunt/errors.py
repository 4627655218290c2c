"""Error kinds surfaced to GraphQL clients.

Every exception raised deliberately by the gateway derives from
:class:`GatewayError` and carries a stable, machine-readable ``kind`` that is
copied into the ``extensions`` of the GraphQL error entry.
"""
import logging
from typing import Any, Dict

logger = logging.getLogger('githunt.errors')


class GatewayError(Exception):
    """Base class for errors reported to clients with a stable kind."""

    kind = 'GATEWAY_ERROR'

    def __init__(self, message: str = '') -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def extensions(self) -> Dict[str, str]:
        return {'kind': self.kind}


class Unauthenticated(GatewayError):
    """An operation that needs an identity was called anonymously."""
    kind = 'UNAUTHENTICATED'

    def __init__(self, message: str = 'You must be logged in to do this.') -> None:
        super().__init__(message)


class NotFound(GatewayError):
    kind = 'NOT_FOUND'


class DuplicateEntry(GatewayError):
    kind = 'DUPLICATE_ENTRY'


class RemoteUnavailable(GatewayError):
    """The remote API failed, timed out, or returned an unusable payload."""
    kind = 'REMOTE_UNAVAILABLE'


class QueryTooLarge(GatewayError):
    kind = 'QUERY_TOO_LARGE'

    def __init__(self, length: int = 0, limit: int = 0) -> None:
        super().__init__('Query too large.')
        self.length = length
        self.limit = limit


class ValidationError(GatewayError):
    kind = 'VALIDATION_ERROR'


def format_error(error) -> Dict[str, Any]:
    """Serialise a graphql-core ``GraphQLError`` for the response body.

    Gateway errors keep their message and kind. Errors without an original
    exception come from parsing/validation and are reported as
    ``GRAPHQL_ERROR``. Anything else is unexpected: it is logged with its
    traceback and its message is hidden from the client.
    """
    formatted: Dict[str, Any] = {'message': error.message}
    if error.locations:
        formatted['locations'] = [
            {'line': loc.line, 'column': loc.column} for loc in error.locations
        ]
    if error.path:
        formatted['path'] = list(error.path)

    original = getattr(error, 'original_error', None)
    if isinstance(original, GatewayError):
        formatted['message'] = original.message
        kind = original.kind
    elif original is None:
        kind = 'GRAPHQL_ERROR'
    else:
        logger.error("Unexpected error resolving %s: %s", error.path, original,
                     exc_info=(type(original), original, original.__traceback__))
        formatted['message'] = 'Internal server error.'
        kind = 'INTERNAL_ERROR'
    formatted['extensions'] = {'kind': kind}
    return formatted


def error_payload(exc: GatewayError) -> Dict[str, Any]:
    """Response body for a gateway error raised before GraphQL execution."""
    return {'errors': [{'message': exc.message, 'extensions': exc.extensions}]}
