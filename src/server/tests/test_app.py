"""
测试应用入口、配置加载与日志配置。
"""

import asyncio
import json
import sys

import pytest
from fastapi.testclient import TestClient
from loguru import logger
from pydantic import ValidationError
from unittest.mock import patch

from src.server import main
from src.server.config import Config, JsonConfigFileSource, config_file_path
from src.server.run import configure_logging
from src.server.signer.errors import CAInitializationError


def test_app_startup_initialises_ca(default_ca):
    with TestClient(main.app) as client:
        response = client.get("/healthz")
    assert response.status_code == 200
    assert default_ca.sign_count == 0
    assert default_ca.ca_pem.startswith(b"-----BEGIN CERTIFICATE-----")


def test_app_startup_aborts_when_ca_fails(default_ca):
    async def _start():
        async with main.lifespan(main.app):
            pass

    with patch.object(default_ca, "ensure_ready", side_effect=CAInitializationError("no entropy")):
        with pytest.raises(CAInitializationError):
            asyncio.run(_start())


def test_request_logging_middleware(default_ca):
    messages = []
    sink_id = logger.add(lambda message: messages.append(str(message)), level="INFO")
    try:
        with TestClient(main.app) as client:
            client.get("/ca")
    finally:
        logger.remove(sink_id)
    assert any("method=GET, path=/ca, status=200" in m for m in messages)


def test_config_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    cfg = Config(_env_file=None)
    assert cfg.mockca_port == 8080
    assert cfg.mockca_cert_validity_days == 365
    assert cfg.default_config_key == "pki-config.json"
    assert cfg.pki_timeout_seconds == 60.0


def test_config_priority(monkeypatch, tmp_path):
    """测试配置来源优先级：环境变量 > config.json"""
    (tmp_path / "config.json").write_text(
        json.dumps({"mockca_port": 9000, "default_namespace": "from-json"}), encoding="utf-8"
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MOCKCA_PORT", "9100")

    cfg = Config(_env_file=None)
    assert cfg.mockca_port == 9100
    assert cfg.default_namespace == "from-json"


def test_config_file_env(monkeypatch, tmp_path):
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"mockca_log_format": "JSON"}), encoding="utf-8")
    monkeypatch.setenv("CONFIG_FILE", str(path))
    assert Config(_env_file=None).mockca_log_format == "json"


def test_config_file_sections(monkeypatch, tmp_path):
    """测试按段落分组的配置文件，顶层字段优先"""
    (tmp_path / "config.json").write_text(
        json.dumps({"mockca": {"port": 9000, "cert_validity_days": 30}, "pki": {"timeout_seconds": 5}, "mockca_port": 9200}),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CONFIG_FILE", raising=False)

    cfg = Config(_env_file=None)
    assert config_file_path() == tmp_path / "config.json"
    assert cfg.mockca_port == 9200
    assert cfg.mockca_cert_validity_days == 30
    assert cfg.pki_timeout_seconds == 5.0


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_config_file_unreadable_is_ignored(tmp_path, content):
    path = tmp_path / "broken.json"
    path.write_text(content, encoding="utf-8")
    messages = []
    sink_id = logger.add(lambda message: messages.append(str(message)), level="WARNING")
    try:
        assert JsonConfigFileSource(Config, path=path)() == {}
    finally:
        logger.remove(sink_id)
    assert any(str(path) in m for m in messages)


def test_config_file_source_only_returns_known_fields(tmp_path):
    path = tmp_path / "extra.json"
    path.write_text(json.dumps({"mockca": {"host": "127.0.0.1"}, "unknown_key": 1}), encoding="utf-8")
    assert JsonConfigFileSource(Config, path=path)() == {"mockca_host": "127.0.0.1"}


@pytest.mark.parametrize("field, value", [("mockca_port", 0), ("default_validity_days", -1), ("mockca_log_format", "xml")])
def test_config_validation(monkeypatch, tmp_path, field, value):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ValidationError):
        Config(_env_file=None, **{field: value})


def test_configure_logging_json(capsys):
    configure_logging("info", "json")
    try:
        logger.info("structured")
        logger.debug("hidden")
    finally:
        logger.remove()
        logger.add(sys.__stderr__)
    lines = [line for line in capsys.readouterr().out.splitlines() if line]
    assert len(lines) == 1
    assert json.loads(lines[0])["record"]["message"] == "structured"
