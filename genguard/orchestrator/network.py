"""Client network address extraction from proxy headers."""

from collections.abc import Mapping

# Checked in order; the first header with a value wins
CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "x-vercel-forwarded-for")


def network_scope_from_headers(headers: Mapping[str, str]) -> str | None:
    """Return the client address, or None when no proxy header carries one.

    ``X-Forwarded-For`` may list several hops; the first is the client.
    """
    normalized = {key.lower(): value for key, value in headers.items()}
    for header in CLIENT_IP_HEADERS:
        value = normalized.get(header)
        if not value:
            continue
        client = value.split(",")[0].strip()
        if client:
            return client
    return None
