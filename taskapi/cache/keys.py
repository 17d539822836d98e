import hashlib
from urllib.parse import urlencode

from taskapi.schemas import ListQuery

LISTING_SEGMENT = "tasks:list:"


def listing_prefix(namespace: str) -> str:
    """Prefix shared by every cached listing; dropping it drops them all."""
    return f"{namespace}{LISTING_SEGMENT}"


def normalize_query(query: ListQuery) -> str:
    """
    Canonical string form of a listing query.

    Filters are sorted by field name and URL-encoded, so insertion order never
    matters and values containing '&' or '=' cannot alias another filter set.
    """
    pairs = sorted(query.filters.items())
    pairs.append(("page", str(query.page)))
    pairs.append(("per_page", str(query.per_page)))
    return urlencode(pairs)


def encode_listing_key(query: ListQuery, namespace: str = "") -> str:
    digest = hashlib.blake2b(
        normalize_query(query).encode("utf-8"), digest_size=16
    ).hexdigest()
    return f"{listing_prefix(namespace)}{digest}"
