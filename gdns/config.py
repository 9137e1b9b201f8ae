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

"""
Configuration.

Options are nested tables in a TOML or JSON file. They are flattened into
dotted keys ("servers.host.port") and layered: defaults, then the file, then
environment variables, then command line flags.

Example TOML::

    loglevel = "DEBUG"

    [servers.host]
    port = 3053

    [upstream]
    servers = [
        { address = "1.1.1.1", location = [-122.42, 37.77] },
        "8.8.8.8:53",
    ]

    [geo]
    database = "GeoLite2-City.mmdb"
"""

import json
import os
import sys
from pathlib import Path
from typing import Any

if sys.version_info < (3, 11):
    import tomli as tomllib
else:
    import tomllib

from .utils import flatten_dict, is_ip_addr_valid, merge_defaults, parse_addr


class ConfigError(Exception):
    """The configuration is invalid."""

    pass


class _Option:
    def __init__(self, **kwargs):
        self.d = kwargs

    def __getitem__(self, x):
        return self.d[x]


kwargs_defaults = {
    "loglevel": _Option(
        help_="Log level to use. One of {CRITICAL,ERROR,WARNING,INFO,DEBUG}",
        type_=str,
        default="INFO",
    ),
    "all": {
        "max_workers": _Option(
            help_="Max number of datagrams handled at once", type_=int, default=50
        ),
    },
    "servers": {
        "host": {
            "host": _Option(
                help_="Address to listen on (a.b.c.d)", type_=str, default="0.0.0.0"
            ),
            "port": _Option(help_="UDP port to listen on", type_=int, default=53),
        },
    },
    "upstream": {
        "servers": _Option(
            help_="Upstream servers in priority order (ip or ip:port)",
            type_=list,
            default=None,
        ),
        "timeout": _Option(
            help_="Seconds to wait for an upstream reply", type_=float, default=5.0
        ),
    },
    "geo": {
        "database": _Option(
            help_="Path to a MaxMind city database (.mmdb)", type_=str, default=None
        ),
        "networks": _Option(
            help_="Static network locations (config file only)",
            type_=list,
            default=None,
        ),
    },
    "cache": {
        "retention": _Option(
            help_="Seconds a cached answer is kept", type_=float, default=86400
        ),
        "purge_interval": _Option(
            help_="Seconds between purges of expired answers",
            type_=float,
            default=600,
        ),
    },
    "storage": {
        "backend": _Option(
            help_="Where to keep servers and answers (memory or sqlite)",
            type_=str,
            default="memory",
        ),
        "path": _Option(
            help_="Snapshot file (memory) or database file (sqlite)",
            type_=str,
            default=None,
        ),
    },
}

kwargs_defaults = flatten_dict(kwargs_defaults)

# Environment variable -> option
ENVIRONMENT = {
    "PORT": "servers.host.port",
    "GEODNS_STORAGE_PATH": "storage.path",
}


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load a JSON or TOML configuration file, flattened.

    Raises:
        ConfigError: The file can't be read or has an unknown extension.
    """
    path = Path(path)
    try:
        if path.suffix == ".json":
            with open(path) as f:
                return flatten_dict(json.load(f))
        elif path.suffix == ".toml":
            with open(path, "rb") as f:
                return flatten_dict(tomllib.load(f))
    except (OSError, ValueError) as e:
        # json.JSONDecodeError and tomllib.TOMLDecodeError are ValueErrors
        raise ConfigError(f"Unable to load configuration {path}: {e}") from e
    raise ConfigError("Unable to load configuration: unknown file format")


def _coerce(key: str, value: Any) -> Any:
    type_ = kwargs_defaults[key]["type_"]
    if value is None or type_ is list:
        return value
    try:
        return type_(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e


def _normalize_servers(servers: list) -> list[dict[str, Any]]:
    """Turn every form of upstream entry into {address, port, location}."""
    normalized = []
    for item in servers:
        if isinstance(item, str):
            try:
                address, port = parse_addr(item)
            except ValueError as e:
                raise ConfigError(f"Invalid upstream server {item!r}") from e
            location = None
        elif isinstance(item, dict) and "address" in item:
            address = str(item["address"])
            try:
                port = int(item.get("port", 53))
            except (TypeError, ValueError) as e:
                raise ConfigError(
                    f"Invalid port for {item['address']}: {item.get('port')!r}"
                ) from e
            if not 0 < port < 65536:
                raise ConfigError(f"Port out of range for {item['address']}: {port}")
            location = item.get("location")
        else:
            raise ConfigError(f"Invalid upstream server {item!r}")

        if not is_ip_addr_valid(address):
            raise ConfigError(f"Upstream server must be an IP address: {address!r}")
        if location is not None:
            try:
                longitude, latitude = (float(x) for x in location)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid location for {address}: {location!r}") from e
            location = (longitude, latitude)

        normalized.append({"address": address, "port": port, "location": location})
    return normalized


def _normalize_networks(networks: list) -> list[dict[str, Any]]:
    for item in networks:
        if not isinstance(item, dict) or "network" not in item or "location" not in item:
            raise ConfigError(
                f"geo.networks entries need a network and a location: {item!r}"
            )
    return networks


def get_kwargs(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build the flattened configuration.

    Args:
        config_path: Path to a .toml or .json file. Defaults to None.
        overrides: Flattened values from the command line. Defaults to None.
        environ: Environment variables. Defaults to os.environ.

    Raises:
        ConfigError: The configuration is invalid.

    Returns:
        Every option, keyed by its dotted name.
    """
    if environ is None:
        environ = dict(os.environ)

    values: dict[str, Any] = {}
    if config_path is not None:
        values.update(load_config_file(config_path))

    for env, key in ENVIRONMENT.items():
        if environ.get(env):
            values[key] = environ[env]

    values.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        kwargs = merge_defaults(
            {k: v["default"] for k, v in kwargs_defaults.items()}, values
        )
    except KeyError as e:
        raise ConfigError(e.args[0]) from e

    kwargs = {k: _coerce(k, v) for k, v in kwargs.items()}

    if kwargs["upstream.servers"] is not None:
        kwargs["upstream.servers"] = _normalize_servers(kwargs["upstream.servers"])
    if kwargs["geo.networks"] is not None:
        kwargs["geo.networks"] = _normalize_networks(kwargs["geo.networks"])

    if not 0 <= kwargs["servers.host.port"] < 65536:
        raise ConfigError(f"Port out of range: {kwargs['servers.host.port']}")
    if kwargs["upstream.timeout"] <= 0:
        raise ConfigError("upstream.timeout must be positive")
    if kwargs["cache.retention"] <= 0:
        raise ConfigError("cache.retention must be positive")

    return kwargs
