# geodnscache
# A geographically-aware caching DNS proxy
# Copyright (c) 2025 ninjamar

# MIT License

# Copyright (c) 2025 ninjamar

# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:

# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.

# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import ipaddress
from typing import Any


def flatten_dict(d: dict, parent_key: str = "", sep: str = ".") -> dict[str, Any]:
    """Flatten a nested dictionary into dotted keys.

    >>> flatten_dict({"servers": {"host": {"port": 53}}})
    {'servers.host.port': 53}

    Lists are left alone, so a list of tables stays a single value.

    Args:
        d: The dictionary to flatten.
        parent_key: Prefix for the keys. Defaults to "".
        sep: Separator between the parts of a key. Defaults to ".".

    Returns:
        The flattened dictionary.
    """
    items: dict[str, Any] = {}
    for key, value in d.items():
        new_key = f"{parent_key}{sep}{key}" if parent_key else key
        if isinstance(value, dict):
            items.update(flatten_dict(value, new_key, sep=sep))
        else:
            items[new_key] = value
    return items


def merge_defaults(defaults: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    """Overlay flattened values on top of flattened defaults.

    Keys that aren't in the defaults are rejected, which catches typos in
    configuration files.

    Raises:
        KeyError: A key in values has no default.
    """
    unknown = set(values) - set(defaults)
    if unknown:
        raise KeyError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    merged = dict(defaults)
    merged.update(values)
    return merged


def parse_addr(value: str, default_port: int = 53) -> tuple[str, int]:
    """Split "host", "host:port", "[v6]:port" or a bare IPv6 address.

    Raises:
        ValueError: The port isn't a number in range.
    """
    value = value.strip()
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest.lstrip(":") or str(default_port)
    elif value.count(":") == 1:
        host, port = value.split(":")
    else:
        # Plain host, or an IPv6 address without a port
        host, port = value, str(default_port)

    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ValueError(f"Port out of range: {port_num}")
    return host, port_num


def is_ip_addr_valid(ip_addr: str) -> bool:
    """Check if a string is an IPv4 or IPv6 address."""
    try:
        ipaddress.ip_address(ip_addr)
        return True
    except ValueError:
        return False
