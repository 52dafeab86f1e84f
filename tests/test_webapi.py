"""Tests for the FastAPI webhook front end."""

import uuid
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from pandoc_bot import webapi
from pandoc_bot.config import Settings
from pandoc_bot.conversion import ConversionService
from pandoc_bot.conversion.adapters import EngineRouter, LocalStateStore, LocalTempStore
from pandoc_bot.telegram import TelegramBot

SECRET = "hook-secret"


@pytest.fixture
def settings(state_dir, temp_dir):
    return Settings(bot_token="123:abc", state_dir=state_dir, temp_dir=temp_dir, webhook_secret=SECRET)


@pytest.fixture
def tg():
    return MagicMock(spec=TelegramBot)


@pytest.fixture
def app(settings, tg, fake_converter):
    service = ConversionService(
        LocalStateStore(settings.state_dir), LocalTempStore(settings.temp_dir), fake_converter, tg
    )
    return webapi.create_app(settings, bot=tg, service=service)


def _start_update():
    return {"update_id": 1, "message": {"message_id": 1, "chat": {"id": 7}, "text": "/start"}}


def test_health(app):
    client = TestClient(app)
    assert client.get("/health").json() == {"status": "ok"}


def test_webhook_rejects_wrong_secret(app, tg):
    client = TestClient(app)

    resp = client.post(webapi.WEBHOOK_PATH, json=_start_update(), headers={"X-Telegram-Bot-Api-Secret-Token": "nope"})

    assert resp.status_code == 403
    tg.send_message.assert_not_called()


def test_webhook_rejects_missing_secret(app):
    client = TestClient(app)

    assert client.post(webapi.WEBHOOK_PATH, json=_start_update()).status_code == 403


def test_webhook_handles_update(app, tg):
    client = TestClient(app)

    resp = client.post(webapi.WEBHOOK_PATH, json=_start_update(), headers={"X-Telegram-Bot-Api-Secret-Token": SECRET})

    assert resp.json() == {"ok": True}
    tg.send_message.assert_called_once()
    assert tg.send_message.call_args.args[0] == 7


def test_webhook_ignores_malformed_update(app, tg):
    client = TestClient(app)

    resp = client.post(
        webapi.WEBHOOK_PATH,
        json={"message": {"text": "no update id"}},
        headers={"X-Telegram-Bot-Api-Secret-Token": SECRET},
    )

    assert resp.status_code == 200
    assert resp.json() == {"ok": False}
    tg.send_message.assert_not_called()


def test_startup_reconciles_temp_dir(app, temp_dir):
    orphan = temp_dir / f"{uuid.uuid4().hex}.output.pdf"
    orphan.write_bytes(b"%PDF")

    with TestClient(app):
        assert not orphan.exists()


def test_build_service_wires_local_adapters(settings, tg):
    service = webapi.build_service(settings, tg)

    assert isinstance(service._state, LocalStateStore)
    assert isinstance(service._staging, LocalTempStore)
    assert isinstance(service._converter, EngineRouter)


def test_run_exits_on_config_error(monkeypatch, capsys):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)

    with pytest.raises(SystemExit) as exc:
        webapi.run()

    assert exc.value.code == 2
    assert "TELEGRAM_BOT_TOKEN" in capsys.readouterr().err
