"""
命令行入口测试（list / doctor，不触网）
"""

import base64
import logging

import pytest

import cli
from logger import set_level

AES_KEY = base64.b64encode(bytes(range(32))).decode().rstrip("=")


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "gateway.yaml"
    path.write_text(
        "channels:\n"
        "  dingtalk:\n"
        "    client_id: cid\n"
        "    client_secret: sec\n"
        "    allowed_users: ['*']\n"
        "  wecom:\n"
        "    corp_id: corp\n"
        "    secret: s\n"
        "    agent_id: 1\n"
        "    token: t\n"
        f"    encoding_aes_key: {AES_KEY}\n"
        "    allowed_users: [u1, u2]\n"
        "  broken:\n"
        "    platform: wecom\n"
        "    corp_id: corp\n",
        encoding="utf-8",
    )
    return path


class TestList:

    def test_lists_valid_and_invalid_channels(self, config_file, capsys):
        assert cli.main(["list", "--config", str(config_file)]) == 0

        out = capsys.readouterr().out
        assert "2 valid, 1 invalid" in out
        assert "dingtalk" in out
        assert "allow=u1, u2" in out
        assert "path=/wecom/callback" in out
        assert "broken" in out

    def test_missing_config_exits_2(self, tmp_path, capsys):
        assert cli.main(["list", "--config", str(tmp_path / "missing.yaml")]) == 2
        assert "not found" in capsys.readouterr().err


class TestDoctor:

    def test_only_invalid_channels_is_unhealthy(self, tmp_path, capsys):
        path = tmp_path / "gateway.yaml"
        path.write_text("channels:\n  wecom:\n    corp_id: corp\n", encoding="utf-8")

        assert cli.main(["doctor", "--config", str(path)]) == 1
        assert "ConfigError" in capsys.readouterr().out

    def test_no_channels(self, tmp_path, capsys):
        path = tmp_path / "gateway.yaml"
        path.write_text("gateway: {}\n", encoding="utf-8")

        assert cli.main(["doctor", "--config", str(path)]) == 1
        assert "No channels configured" in capsys.readouterr().out

    def test_unknown_command(self):
        with pytest.raises(SystemExit):
            cli.main(["restart"])


class TestLogLevel:

    def test_log_level_override(self, config_file):
        root = logging.getLogger("channel_gateway")
        original = logging.getLevelName(root.level)
        try:
            assert cli.main(["list", "--config", str(config_file), "--log-level", "debug"]) == 0
            assert root.level == logging.DEBUG
        finally:
            set_level(original)
