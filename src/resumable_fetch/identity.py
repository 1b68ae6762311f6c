"""
Client identity sent as the User-Agent header.

Format: ``<app>(<os>)/<version>/<client id>``, e.g. ``MWM(Linux)/0.1.0/77129201844``.
The client id is stable per device: the decimal form of the hardware MAC
address, else the creation time of the root filesystem, else a placeholder.
Sessions treat the resulting string as opaque.
"""

import functools
import os
import platform
import uuid
from typing import Optional

UNKNOWN_CLIENT_ID = "------------"


def mac_address() -> str:
    """Decimal MAC address of this host, or empty string if none was found."""
    node = uuid.getnode()
    # getnode() falls back to a random number with the multicast bit set
    if (node >> 40) & 0x01:
        return ""
    return str(node)


def fs_creation_time() -> str:
    """Creation time of the root filesystem as a unix timestamp string, or empty."""
    root = os.path.abspath(os.sep)
    try:
        st = os.stat(root)
    except OSError:
        return ""
    created = getattr(st, "st_birthtime", None) or st.st_ctime
    if not created:
        return ""
    return str(int(created))


@functools.lru_cache(maxsize=1)
def unique_client_id() -> str:
    """Stable per-device identifier."""
    return mac_address() or fs_creation_time() or UNKNOWN_CLIENT_ID


def build_user_agent(
    app_name: str,
    version: str,
    client_id: Optional[str] = None,
    os_name: Optional[str] = None,
) -> str:
    """
    Build the client identity header value.

    Args:
        app_name: Application name
        version: Application version
        client_id: Per-device id (None = derive with unique_client_id())
        os_name: Operating system name (None = platform.system())

    Returns:
        User-Agent string
    """
    os_name = os_name or platform.system() or "Unknown"
    client_id = client_id or unique_client_id()
    return f"{app_name}({os_name})/{version}/{client_id}"
