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

import argparse
import logging
import secrets
import sys

from .client import Client
from .config import ConfigError, get_kwargs, kwargs_defaults
from .cache import AnswerCache
from .directory import NoUpstreamError, UpstreamDirectory
from .geo import make_locator
from .manager import ServerManager, build_upstream_servers
from .protocol import (DNSHeader, DNSQuery, DNSQuestion, RTypes, format_rdata,
                       parse_rtype)
from .storage import StoreError, make_store
from .utils import parse_addr


def _setup_logging(level: str) -> None:
    try:
        numeric = logging.getLevelNamesMapping()[level.upper()]
    except (AttributeError, KeyError):
        # getLevelNamesMapping is new in 3.11
        numeric = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load(args) -> dict:
    overrides = {
        k: v
        for k, v in vars(args).items()
        if k in kwargs_defaults and v is not None
    }
    kwargs = get_kwargs(args.config, overrides)
    _setup_logging(kwargs["loglevel"])
    return kwargs


def run(args) -> int:
    kwargs = _load(args)
    manager = ServerManager.from_config(kwargs)
    try:
        manager.start()
    except OSError as e:
        # Usually the port is taken, or below 1024 without privileges
        host, port = manager.host
        logging.critical("Unable to listen on %s:%s: %s", host, port, e)
        print(f"error: unable to listen on {host}:{port}: {e}", file=sys.stderr)
        return 1
    return 0


def query(args) -> int:
    _setup_logging("WARNING")
    server = parse_addr(args.server)
    q = DNSQuery(
        DNSHeader(id_=secrets.randbelow(65536), rd=1),
        [DNSQuestion(decoded_name=args.name, type_=parse_rtype(args.type))],
    )

    client = Client(timeout=args.timeout)
    try:
        reply = client.resolve(q, server).result()
    except TimeoutError:
        print(f"No reply from {server[0]}:{server[1]}", file=sys.stderr)
        return 1
    finally:
        client.cleanup()

    for answer in reply.answers:
        try:
            type_name = RTypes(answer.type_).name
        except ValueError:
            type_name = str(answer.type_)
        print(f"{answer.decoded_name}\t{answer.ttl}\t{type_name}\t{format_rdata(answer)}")
    return 0


def purge(args) -> int:
    kwargs = _load(args)
    storage = make_store(kwargs)
    storage.prepare()
    try:
        count = AnswerCache(storage, retention=kwargs["cache.retention"]).purge()
    finally:
        storage.close()
    print(f"Purged {count} expired answers")
    return 0


def servers(args) -> int:
    kwargs = _load(args)
    storage = make_store(kwargs)
    storage.prepare()
    locator = make_locator(kwargs)
    try:
        directory = UpstreamDirectory(storage)
        directory.load(build_upstream_servers(kwargs["upstream.servers"] or [], locator))
        for server in directory.servers():
            longitude, latitude = server.location
            print(
                f"{server.rank}\t{server.address}:{server.port}\t{longitude:.4f},{latitude:.4f}"
            )
    finally:
        locator.close()
        storage.close()
    return 0


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file (json or toml)",
    )
    for key, value in kwargs_defaults.items():
        parser.add_argument(
            f"--{key}",
            dest=key,
            help=value["help_"],
            type=value["type_"] if value["type_"] != list else None,
            nargs="+" if value["type_"] == list else None,  # type: ignore[arg-type]
        )


def cli(argv: list[str] | None = None) -> int:
    """The command line interface for geodnscache."""
    parser = argparse.ArgumentParser(
        description="A geographically-aware caching DNS proxy",
        fromfile_prefix_chars="@",
    )
    subparsers = parser.add_subparsers(help="Functions", dest="subcommand")

    parser_run = subparsers.add_parser("run", help="Run the DNS proxy")
    _add_config_arguments(parser_run)
    parser_run.set_defaults(func=run)

    parser_query = subparsers.add_parser("query", help="Send a single query")
    parser_query.add_argument("name", help="Domain name to look up")
    parser_query.add_argument("--type", "-t", default="A", help="Record type")
    parser_query.add_argument(
        "--server", "-s", default="127.0.0.1:53", help="Server to ask (host:port)"
    )
    parser_query.add_argument(
        "--timeout", type=float, default=5.0, help="Seconds to wait for a reply"
    )
    parser_query.set_defaults(func=query)

    parser_purge = subparsers.add_parser(
        "purge", help="Delete expired answers from the store"
    )
    _add_config_arguments(parser_purge)
    parser_purge.set_defaults(func=purge)

    parser_servers = subparsers.add_parser(
        "servers", help="List the upstream servers in the store"
    )
    _add_config_arguments(parser_servers)
    parser_servers.set_defaults(func=servers)

    args = parser.parse_args(argv)

    if args.subcommand is None:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except (ConfigError, StoreError, NoUpstreamError, ValueError) as e:
        logging.critical("%s", e)
        print(f"error: {e}", file=sys.stderr)
        return 1
