import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from telegram_bot import notify


class FakeBot:
    sent = []
    fail = False

    def __init__(self, token):
        self.token = token

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send_message(self, chat_id, text):
        if FakeBot.fail:
            raise RuntimeError("Forbidden: bot was blocked by the user")
        FakeBot.sent.append((self.token, chat_id, text))


def test_skipped_without_token(monkeypatch):
    monkeypatch.setattr(notify, "Bot", FakeBot)
    FakeBot.sent = []
    assert asyncio.run(notify.send_telegram_message(42, "hi")) is False
    assert FakeBot.sent == []


def test_sends_with_quoted_token(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "'123:abc'")
    monkeypatch.setattr(notify, "Bot", FakeBot)
    FakeBot.sent = []
    FakeBot.fail = False
    assert asyncio.run(notify.send_telegram_message(42, "hi")) is True
    assert FakeBot.sent == [("123:abc", 42, "hi")]


def test_api_error_returns_false(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setattr(notify, "Bot", FakeBot)
    monkeypatch.setattr(FakeBot, "fail", True)
    assert asyncio.run(notify.send_telegram_message(42, "hi")) is False
