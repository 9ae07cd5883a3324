"""Caller identity and read-access policy.

Caller identity comes from X-User-* headers set by the API Gateway; the
AccessPolicy decides which entity types that caller may read.
"""

from case_governor.auth.access import AccessPolicy, read_permission
from case_governor.auth.request_context import RequestContext, get_request_context

__all__ = [
    "AccessPolicy",
    "RequestContext",
    "get_request_context",
    "read_permission",
]
