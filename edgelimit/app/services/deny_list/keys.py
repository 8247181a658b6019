"""Redis key layout of the deny list."""

DENY_LIST_EXTENSION = "denyList"
IP_DENY_LIST_KEY = "ipDenyList"
IP_DENY_LIST_STATUS_KEY = "ipDenyListStatus"


def all_deny_lists_key(prefix: str) -> str:
    """Set holding every denied member, manual and IP list entries alike."""
    return f"{prefix}:{DENY_LIST_EXTENSION}:all"


def ip_deny_list_key(prefix: str) -> str:
    """Set holding the current IP reputation list contribution."""
    return f"{prefix}:{DENY_LIST_EXTENSION}:{IP_DENY_LIST_KEY}"


def ip_deny_list_status_key(prefix: str) -> str:
    return f"{prefix}:{IP_DENY_LIST_STATUS_KEY}"
