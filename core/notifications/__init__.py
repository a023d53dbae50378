"""Notifications module."""

from core.notifications.telegram import TelegramNotifier

__all__ = ["TelegramNotifier"]
