"""Telegram Bot API transport."""

from __future__ import annotations

from .api import TelegramBotApi

__all__ = ["TelegramBotApi"]
