"""Deny list protection: manual entries plus the IP reputation list."""

from edgelimit.app.services.deny_list.cache import (
    DenyListCache,
    get_deny_list_cache,
    reset_deny_list_cache,
)
from edgelimit.app.services.deny_list.ip_deny_list import (
    disable_ip_deny_list,
    get_ip_deny_list,
    get_ip_list_ttl,
    update_ip_deny_list,
    validate_threshold,
)
from edgelimit.app.services.deny_list.service import (
    DenyListResponse,
    NOT_DENIED,
    add_to_deny_list,
    check_deny_list,
    default_denied_response,
    remove_from_deny_list,
    resolve_limit_payload,
)

__all__ = [
    "DenyListCache",
    "DenyListResponse",
    "NOT_DENIED",
    "add_to_deny_list",
    "check_deny_list",
    "default_denied_response",
    "disable_ip_deny_list",
    "get_deny_list_cache",
    "get_ip_deny_list",
    "get_ip_list_ttl",
    "remove_from_deny_list",
    "reset_deny_list_cache",
    "resolve_limit_payload",
    "update_ip_deny_list",
    "validate_threshold",
]
