"""
foxros._cli — CLI entry point for the foxros package.

Inspect and drive a robot through a Foxglove WebSocket bridge: list topics
and services, echo and publish messages, call services, read and write
parameters. The endpoint comes from --url, else ``$FOXROS_URL``, else
``ws://localhost:8765``.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from typing import TYPE_CHECKING, Any

from foxros._codec import to_dict
from foxros.const import DEFAULT_CONNECT_TIMEOUT, DEFAULT_URL, ENV_URL
from foxros.exceptions import FoxRosError
from foxros.param import Param
from foxros.ros import Ros
from foxros.service import Service
from foxros.topic import Topic

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_CLI_EPILOG = """
Commands
────────

Discovery
  topics        List advertised topics and their types.
  services      List advertised services and their types.
  type NAME     Print the type of a topic or service.

Topics
  echo TOPIC    Print messages as JSON (--count N to stop after N).
  pub TOPIC TYPE JSON
                Publish one message (--times N, --interval S).

Services & parameters
  call SERVICE JSON      Call a service and print the response.
  param-get NAME         Print a parameter value.
  param-set NAME JSON    Set a parameter (value parsed as JSON).

Connection
  --url URL     Bridge endpoint (default: $FOXROS_URL or ws://localhost:8765).
  --timeout N   Seconds to wait for the connection and for replies (default: 10).
  --wait N      Seconds to collect advertisements before listing (default: 1).
  --debug       Log protocol frames.

Examples
  foxros topics
  foxros echo /chatter --count 5
  foxros pub /chatter std_msgs/msg/String '{"data": "hello"}'
  foxros call /enable '{"data": true}'
  foxros param-get /talker.use_sim_time
"""


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--url",
        type=str,
        default=None,
        help=f"Bridge endpoint (default: ${ENV_URL} or {DEFAULT_URL}).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_CONNECT_TIMEOUT,
        help=f"Timeout in seconds (default: {DEFAULT_CONNECT_TIMEOUT:g}).",
    )
    parser.add_argument(
        "--wait",
        type=float,
        default=1.0,
        help="Seconds to collect advertisements before listing (default: 1).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")


def _resolve_url(args: argparse.Namespace) -> str:
    return getattr(args, "url", None) or os.environ.get(ENV_URL) or DEFAULT_URL


def _parse_json(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Invalid JSON for {what}: {exc}") from exc


def _dump(message: Any) -> str:
    return json.dumps(to_dict(message), default=str)


@contextlib.asynccontextmanager
async def _with_session(args: argparse.Namespace) -> AsyncIterator[Ros]:
    """Yield a ready session. Closes it on exit."""
    ros = Ros(_resolve_url(args), connect_timeout=args.timeout)
    await ros.connect()
    try:
        yield ros
    finally:
        await ros.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="foxros",
        description="ROS topics, services and parameters over a Foxglove WebSocket bridge.",
        epilog=_CLI_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", title="commands")

    # ----- Discovery -----
    _add_connection_args(subparsers.add_parser("topics", help="List advertised topics."))
    _add_connection_args(subparsers.add_parser("services", help="List advertised services."))
    type_parser = subparsers.add_parser("type", help="Print the type of a topic or service.")
    type_parser.add_argument("name", help="Topic or service name.")
    _add_connection_args(type_parser)

    # ----- Topics -----
    echo_parser = subparsers.add_parser("echo", help="Print messages on a topic.")
    echo_parser.add_argument("topic", help="Topic name.")
    echo_parser.add_argument("--count", type=int, default=0, help="Stop after N messages (0 = forever).")
    _add_connection_args(echo_parser)

    pub_parser = subparsers.add_parser("pub", help="Publish a message.")
    pub_parser.add_argument("topic", help="Topic name.")
    pub_parser.add_argument("message_type", help="Message type, e.g. std_msgs/msg/String.")
    pub_parser.add_argument("message", help="Message as JSON.")
    pub_parser.add_argument("--times", type=int, default=1, help="Number of messages (default: 1).")
    pub_parser.add_argument("--interval", type=float, default=1.0, help="Seconds between messages.")
    _add_connection_args(pub_parser)

    # ----- Services & parameters -----
    call_parser = subparsers.add_parser("call", help="Call a service.")
    call_parser.add_argument("service", help="Service name.")
    call_parser.add_argument("request", nargs="?", default="{}", help="Request as JSON (default: {}).")
    _add_connection_args(call_parser)

    get_parser = subparsers.add_parser("param-get", help="Print a parameter value.")
    get_parser.add_argument("name", help="Parameter name (node.param or node:param).")
    _add_connection_args(get_parser)

    set_parser = subparsers.add_parser("param-set", help="Set a parameter value.")
    set_parser.add_argument("name", help="Parameter name (node.param or node:param).")
    set_parser.add_argument("value", help="Value as JSON.")
    _add_connection_args(set_parser)

    return parser


def _main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s" if args.debug else "%(message)s",
    )

    handlers = {
        "topics": _run_topics,
        "services": _run_services,
        "type": _run_type,
        "echo": _run_echo,
        "pub": _run_pub,
        "call": _run_call,
        "param-get": _run_param_get,
        "param-set": _run_param_set,
    }
    handler = handlers.get(args.command)
    if not handler:
        parser.print_help()
        sys.exit(1)
    try:
        asyncio.run(handler(args))
    except FoxRosError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except TimeoutError:
        print(f"Error: no reply within {args.timeout:g}s", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


# ----- Discovery -----
async def _run_topics(args: argparse.Namespace) -> None:
    async with _with_session(args) as ros:
        await asyncio.sleep(args.wait)
        listing = await ros.get_topics()
        if not listing["topics"]:
            print("No topics.")
        width = max((len(t) for t in listing["topics"]), default=0) + 2
        for topic, msg_type in zip(listing["topics"], listing["types"]):
            print(f"{topic:<{width}}{msg_type}")


async def _run_services(args: argparse.Namespace) -> None:
    async with _with_session(args) as ros:
        await asyncio.sleep(args.wait)
        names = await ros.get_services()
        if not names:
            print("No services.")
        width = max((len(n) for n in names), default=0) + 2
        for name in names:
            print(f"{name:<{width}}{await ros.get_service_type(name) or ''}")


async def _run_type(args: argparse.Namespace) -> None:
    async with _with_session(args) as ros:
        await asyncio.sleep(args.wait)
        found = await ros.get_topic_type(args.name) or await ros.get_service_type(args.name)
        if not found:
            print(f"{args.name}: not advertised", file=sys.stderr)
            sys.exit(1)
        print(found)


# ----- Topics -----
async def _run_echo(args: argparse.Namespace) -> None:
    async with _with_session(args) as ros:
        seen = 0
        stream = Topic(ros, args.topic).messages()
        with contextlib.suppress(asyncio.CancelledError):
            async with contextlib.aclosing(stream):
                async for msg in stream:
                    print(_dump(msg), flush=True)
                    seen += 1
                    if args.count and seen >= args.count:
                        break


async def _run_pub(args: argparse.Namespace) -> None:
    message = _parse_json(args.message, "message")
    async with _with_session(args) as ros:
        topic = Topic(ros, args.topic, args.message_type)
        for i in range(args.times):
            if i:
                await asyncio.sleep(args.interval)
            await asyncio.wait_for(topic.publish(message), timeout=args.timeout)
        print(f"Published {args.times} message(s) on {args.topic}.")
        topic.unadvertise()


# ----- Services & parameters -----
async def _run_call(args: argparse.Namespace) -> None:
    request = _parse_json(args.request, "request")
    async with _with_session(args) as ros:
        response = await asyncio.wait_for(Service(ros, args.service).call(request), timeout=args.timeout)
        print(_dump(response))


async def _run_param_get(args: argparse.Namespace) -> None:
    async with _with_session(args) as ros:
        value = await asyncio.wait_for(Param(ros, args.name).get(), timeout=args.timeout)
        print(_dump(value))


async def _run_param_set(args: argparse.Namespace) -> None:
    value = _parse_json(args.value, "value")
    async with _with_session(args) as ros:
        result = await asyncio.wait_for(Param(ros, args.name).set(value), timeout=args.timeout)
        print(_dump(result))


def main() -> None:
    _main()
