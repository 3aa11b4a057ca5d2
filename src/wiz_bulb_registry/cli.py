"""Command-line client for the bulb registry HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional
from urllib.parse import quote

import httpx
import yaml


DEFAULT_SERVER_URL = "http://127.0.0.1:3000"
ENV_PREFIX = "WIZ_REGISTRY_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    output: str
    timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "CLI for the WiZ bulb registry API. Uses WIZ_REGISTRY_* env vars for "
            "defaults and prints JSON (default) or YAML. Examples: "
            "`wiz-registry-cli add --name kitchen --address 192.168.1.20`, "
            "`wiz-registry-cli on 1`."
        )
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=(
            f"Base URL for the registry API (env: {ENV_PREFIX}SERVER_URL). "
            f"Defaults to {DEFAULT_SERVER_URL}."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(_env("CLIENT_TIMEOUT", "10.0") or 10.0),
        help="HTTP timeout in seconds; discovery waits for the server's scan window.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    health = subparsers.add_parser("health", help="Check API health (GET /health)")
    health.set_defaults(func=_cmd_health)

    list_cmd = subparsers.add_parser("list", help="List registered bulbs (GET /bulbs)")
    list_cmd.set_defaults(func=_cmd_list)

    add = subparsers.add_parser(
        "add",
        help="Register a bulb (POST /bulb)",
        description="Registers a bulb. Without --id the server assigns the next numeric id.",
    )
    add.add_argument("--id", help="Bulb identifier; integers are numeric ids, anything else is opaque")
    add.add_argument("--name", required=True, help="Human-readable bulb name")
    add.add_argument("--address", required=True, help="Bulb IPv4 address")
    add.add_argument("--mac", help="Manufacturer identifier; resolved from the bulb when omitted")
    power = add.add_mutually_exclusive_group()
    power.add_argument("--on", dest="initial_power", action="store_const", const=True, help="Record the bulb as on")
    power.add_argument("--off", dest="initial_power", action="store_const", const=False, help="Record the bulb as off")
    add.set_defaults(func=_cmd_add, initial_power=None)

    find = subparsers.add_parser("find", help="Look up a bulb by name (GET /bulb/{name})")
    find.add_argument("name")
    find.set_defaults(func=_cmd_find)

    for name, handler, summary in (
        ("on", _cmd_on, "Turn a bulb on (GET /bulb/on/{id})"),
        ("off", _cmd_off, "Turn a bulb off (GET /bulb/off/{id})"),
        ("toggle", _cmd_toggle, "Flip a bulb's power state (POST /bulb/{id}/toggle)"),
        ("state", _cmd_state, "Query a bulb's power state (GET /bulb/{id}/state)"),
        ("remove", _cmd_remove, "Unregister a bulb (DELETE /bulb/{id})"),
    ):
        command = subparsers.add_parser(name, help=summary)
        command.add_argument("id", help="Bulb identifier")
        command.set_defaults(func=handler)

    discover = subparsers.add_parser(
        "discover",
        help="Scan the LAN for unregistered bulbs (GET /bulb/discover)",
    )
    discover.set_defaults(func=_cmd_discover)

    return parser


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")
    if args.timeout <= 0:
        raise CliError("Timeout must be positive")
    return ClientConfig(server_url=args.server_url, output=output, timeout=args.timeout)


def _build_client(
    config: ClientConfig, transport: Optional[httpx.BaseTransport] = None
) -> httpx.Client:
    return httpx.Client(base_url=config.server_url, timeout=config.timeout, transport=transport)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        try:
            body = response.json()
        except ValueError:
            body = {"detail": response.text}
        detail = body.get("detail") if isinstance(body, dict) else body
        kind = body.get("error") if isinstance(body, dict) else None
        suffix = f" [{kind}]" if kind else ""
        raise CliError(f"Request failed ({response.status_code}){suffix}: {detail}") from exc
    if response.content:
        return response.json()
    return None


def _segment(value: str) -> str:
    return quote(value, safe="")


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/health")), config.output)


def _cmd_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/bulbs")), config.output)


def _cmd_add(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload: Dict[str, Any] = {"name": args.name, "address": args.address}
    if args.id is not None:
        payload["id"] = int(args.id) if _is_integer(args.id) else args.id
    if args.mac:
        payload["mac"] = args.mac
    if args.initial_power is not None:
        payload["initial_power"] = args.initial_power
    _print_output(_handle_response(client.post("/bulb", json=payload)), config.output)


def _cmd_find(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get(f"/bulb/{_segment(args.name)}")), config.output)


def _cmd_on(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get(f"/bulb/on/{_segment(args.id)}")), config.output)


def _cmd_off(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get(f"/bulb/off/{_segment(args.id)}")), config.output)


def _cmd_toggle(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.post(f"/bulb/{_segment(args.id)}/toggle"))
    _print_output(data, config.output)


def _cmd_state(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get(f"/bulb/{_segment(args.id)}/state"))
    _print_output(data, config.output)


def _cmd_remove(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _handle_response(client.delete(f"/bulb/{_segment(args.id)}"))
    _print_output({"status": "removed", "id": args.id}, config.output)


def _cmd_discover(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/bulb/discover")), config.output)


def _is_integer(value: str) -> bool:
    text = value.strip()
    if text[:1] in {"+", "-"}:
        text = text[1:]
    return text.isdigit()


def main(
    argv: Optional[Iterable[str]] = None, transport: Optional[httpx.BaseTransport] = None
) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)

    try:
        config = _load_config(args)
        with _build_client(config, transport) as client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
