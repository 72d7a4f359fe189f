"""
Run notifications.

A notifier is told when an agent run finishes. The console notifier prints
a styled one-line summary; other channels implement the same `notify`
coroutine.
"""

from typing import Protocol

from utils.console import console


class Notifier(Protocol):
    async def notify(self, title: str, body: str) -> None:
        ...


class ConsoleNotifier:
    """Notifier that prints to the terminal."""

    name = "console"

    async def notify(self, title: str, body: str) -> None:
        console.notify(title, body)
