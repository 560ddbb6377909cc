"""Tests for foxros._cli — CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from foxros._cli import _add_connection_args, _main, _resolve_url
from foxros.exceptions import FoxRosConnectionError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_ros() -> MagicMock:
    """A connected-session stand-in with every awaited method mocked."""
    ros = MagicMock()
    ros.connect = AsyncMock()
    ros.close = AsyncMock()
    ros.get_topics = AsyncMock(return_value={"topics": [], "types": []})
    ros.get_services = AsyncMock(return_value=[])
    ros.get_topic_type = AsyncMock(return_value=None)
    ros.get_service_type = AsyncMock(return_value=None)
    ros.create_publisher = AsyncMock(return_value=MagicMock(publish=AsyncMock()))
    ros.send_service_request = AsyncMock()
    ros.get_parameter = AsyncMock()
    ros.set_parameter = AsyncMock()
    return ros


@pytest.fixture(autouse=True)
def _no_log_config():
    with patch("foxros._cli.logging.basicConfig"):
        yield


@pytest.fixture
def ros():
    instance = _make_ros()
    with patch("foxros._cli.Ros", return_value=instance) as MockRos:  # noqa: N806
        instance.factory = MockRos
        yield instance


def _run(*argv: str) -> None:
    _main([*argv, "--wait", "0"])


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------


class TestArguments:
    def test_connection_defaults(self):
        parser = argparse.ArgumentParser()
        _add_connection_args(parser)
        args = parser.parse_args([])
        assert args.url is None
        assert args.timeout == 10.0
        assert args.wait == 1.0
        assert args.debug is False

    def test_resolve_url_prefers_flag(self, monkeypatch):
        monkeypatch.setenv("FOXROS_URL", "ws://env:8765")
        assert _resolve_url(argparse.Namespace(url="ws://flag:1")) == "ws://flag:1"

    def test_resolve_url_env(self, monkeypatch):
        monkeypatch.setenv("FOXROS_URL", "ws://env:8765")
        assert _resolve_url(argparse.Namespace(url=None)) == "ws://env:8765"

    def test_resolve_url_default(self, monkeypatch):
        monkeypatch.delenv("FOXROS_URL", raising=False)
        assert _resolve_url(argparse.Namespace(url=None)) == "ws://localhost:8765"

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            _main([])
        assert excinfo.value.code == 0
        assert "foxros" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestDiscoveryCommands:
    def test_topics(self, ros, capsys):
        ros.get_topics.return_value = {
            "topics": ["/chatter", "/odom"],
            "types": ["std_msgs/msg/String", "nav_msgs/msg/Odometry"],
        }
        _run("topics", "--url", "ws://robot:8765")
        out = capsys.readouterr().out
        assert "/chatter" in out
        assert "nav_msgs/msg/Odometry" in out
        ros.factory.assert_called_once_with("ws://robot:8765", connect_timeout=10.0)
        ros.connect.assert_awaited_once()
        ros.close.assert_awaited_once()

    def test_no_topics(self, ros, capsys):
        _run("topics")
        assert "No topics." in capsys.readouterr().out

    def test_services(self, ros, capsys):
        ros.get_services.return_value = ["/enable"]
        ros.get_service_type.return_value = "std_srvs/srv/SetBool"
        _run("services")
        assert "std_srvs/srv/SetBool" in capsys.readouterr().out

    def test_type_falls_back_to_service(self, ros, capsys):
        ros.get_service_type.return_value = "std_srvs/srv/SetBool"
        _run("type", "/enable")
        assert capsys.readouterr().out.strip() == "std_srvs/srv/SetBool"

    def test_type_not_advertised(self, ros, capsys):
        with pytest.raises(SystemExit) as excinfo:
            _run("type", "/missing")
        assert excinfo.value.code == 1
        assert "not advertised" in capsys.readouterr().err
        ros.close.assert_awaited_once()


class TestTopicCommands:
    def test_echo_count(self, ros, capsys):
        def subscribe(name, handler):
            loop = asyncio.get_running_loop()
            for text in ("a", "b", "c"):
                loop.call_soon(handler, {"data": text})
            return MagicMock()

        ros.create_subscription = AsyncMock(side_effect=subscribe)
        _run("echo", "/chatter", "--count", "2")
        lines = capsys.readouterr().out.splitlines()
        assert [json.loads(line) for line in lines] == [{"data": "a"}, {"data": "b"}]

    def test_pub(self, ros, capsys):
        _run("pub", "/chatter", "std_msgs/msg/String", '{"data": "hi"}', "--times", "2", "--interval", "0")
        publisher = ros.create_publisher.return_value
        ros.create_publisher.assert_awaited_once_with("/chatter", "std_msgs/msg/String")
        assert publisher.publish.await_count == 2
        publisher.publish.assert_awaited_with({"data": "hi"})
        publisher.close.assert_called_once()
        assert "Published 2 message(s)" in capsys.readouterr().out

    def test_pub_invalid_json(self, ros):
        with pytest.raises(SystemExit) as excinfo:
            _run("pub", "/chatter", "std_msgs/msg/String", "{nope")
        assert "Invalid JSON" in str(excinfo.value.code)
        ros.connect.assert_not_awaited()


class TestServiceAndParamCommands:
    def test_call(self, ros, capsys):
        ros.send_service_request.return_value = SimpleNamespace(success=True, message="ok")
        _run("call", "/enable", '{"data": true}')
        ros.send_service_request.assert_awaited_once_with("/enable", {"data": True})
        assert json.loads(capsys.readouterr().out) == {"success": True, "message": "ok"}

    def test_call_default_request(self, ros):
        ros.send_service_request.return_value = SimpleNamespace()
        _run("call", "/trigger")
        ros.send_service_request.assert_awaited_once_with("/trigger", {})

    def test_param_get_normalises_name(self, ros, capsys):
        ros.get_parameter.return_value = 5
        _run("param-get", "/talker:rate")
        ros.get_parameter.assert_awaited_once_with("/talker.rate")
        assert capsys.readouterr().out.strip() == "5"

    def test_param_set(self, ros, capsys):
        ros.set_parameter.return_value = [1, 2]
        _run("param-set", "/talker.values", "[1, 2]")
        ros.set_parameter.assert_awaited_once_with("/talker.values", [1, 2])
        assert json.loads(capsys.readouterr().out) == [1, 2]


class TestErrors:
    def test_connection_error_exits_1(self, ros, capsys):
        ros.connect.side_effect = FoxRosConnectionError("refused")
        with pytest.raises(SystemExit) as excinfo:
            _run("topics")
        assert excinfo.value.code == 1
        assert "Error: refused" in capsys.readouterr().err

    def test_reply_timeout_exits_1(self, ros, capsys):
        async def never(*_args):
            await asyncio.sleep(10)

        ros.get_parameter.side_effect = never
        with pytest.raises(SystemExit) as excinfo:
            _main(["param-get", "/x", "--timeout", "0.01"])
        assert excinfo.value.code == 1
        assert "no reply within" in capsys.readouterr().err
        ros.close.assert_awaited_once()
