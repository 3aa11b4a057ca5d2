import json
from argparse import Namespace
from typing import Any, Dict, List

import httpx
import pytest
import yaml

from wiz_bulb_registry.cli import (
    CliError,
    ClientConfig,
    _cmd_add,
    _cmd_find,
    _handle_response,
    main,
)


def _recording_transport(
    captured: List[Dict[str, Any]], status: int = 200, response_json: Any = None
) -> httpx.MockTransport:
    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(
            {
                "method": request.method,
                "url": str(request.url),
                "json": json.loads(request.content.decode()) if request.content else None,
            }
        )
        if status == 204:
            return httpx.Response(204)
        return httpx.Response(status, json=response_json if response_json is not None else {})

    return httpx.MockTransport(_handler)


def test_add_payload_parses_numeric_id() -> None:
    captured: List[Dict[str, Any]] = []
    config = ClientConfig(server_url="http://test", output="json")
    args = Namespace(id="7", name="porch", address="10.0.0.7", mac=None, initial_power=True)

    with httpx.Client(transport=_recording_transport(captured, 201), base_url="http://test") as client:
        _cmd_add(config, client, args)

    assert captured[0]["method"] == "POST"
    assert captured[0]["url"].endswith("/bulb")
    assert captured[0]["json"] == {
        "name": "porch",
        "address": "10.0.0.7",
        "id": 7,
        "initial_power": True,
    }


def test_add_payload_keeps_opaque_id() -> None:
    captured: List[Dict[str, Any]] = []
    config = ClientConfig(server_url="http://test", output="json")
    args = Namespace(id="desk-1", name="desk", address="10.0.0.1", mac="A8BB", initial_power=None)

    with httpx.Client(transport=_recording_transport(captured, 201), base_url="http://test") as client:
        _cmd_add(config, client, args)

    assert captured[0]["json"] == {"name": "desk", "address": "10.0.0.1", "id": "desk-1", "mac": "A8BB"}


def test_find_escapes_name() -> None:
    captured: List[Dict[str, Any]] = []
    config = ClientConfig(server_url="http://test", output="json")
    with httpx.Client(transport=_recording_transport(captured), base_url="http://test") as client:
        _cmd_find(config, client, Namespace(name="living room"))
    assert captured[0]["url"].endswith("/bulb/living%20room")


def test_error_response_surfaces_kind() -> None:
    response = httpx.Response(
        504,
        json={"detail": "no reply", "error": "timeout"},
        request=httpx.Request("GET", "http://test/bulb/on/1"),
    )
    with pytest.raises(CliError, match=r"\(504\) \[timeout\]: no reply"):
        _handle_response(response)


def test_main_on_prints_json(capsys) -> None:
    captured: List[Dict[str, Any]] = []
    transport = _recording_transport(captured, response_json={"id": 1, "power": True})
    main(["--server-url", "http://test", "on", "1"], transport=transport)
    assert captured[0]["url"] == "http://test/bulb/on/1"
    assert json.loads(capsys.readouterr().out) == {"id": 1, "power": True}


def test_main_list_prints_yaml(capsys) -> None:
    captured: List[Dict[str, Any]] = []
    transport = _recording_transport(captured, response_json=[{"id": 1, "name": "desk"}])
    main(["--server-url", "http://test", "--output", "yaml", "list"], transport=transport)
    assert yaml.safe_load(capsys.readouterr().out) == [{"id": 1, "name": "desk"}]


def test_main_remove_uses_delete(capsys) -> None:
    captured: List[Dict[str, Any]] = []
    main(["--server-url", "http://test", "remove", "desk-1"], transport=_recording_transport(captured, 204))
    assert captured[0]["method"] == "DELETE"
    assert json.loads(capsys.readouterr().out) == {"status": "removed", "id": "desk-1"}


def test_main_exits_on_http_error(capsys) -> None:
    transport = _recording_transport([], status=404, response_json={"detail": "missing", "error": "not_found"})
    with pytest.raises(SystemExit) as excinfo:
        main(["--server-url", "http://test", "state", "9"], transport=transport)
    assert excinfo.value.code == 1
    assert "not_found" in capsys.readouterr().err
