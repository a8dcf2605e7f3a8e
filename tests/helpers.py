import asyncio
from typing import List, Sequence, Tuple

from events.prompts import Notifier, PromptOption
from transaction.category_suggester import CategorySuggestions


async def settle(rounds: int = 20) -> None:
    """Let tasks scheduled on the loop run to completion"""
    for _ in range(rounds):
        await asyncio.sleep(0)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.messages: List[Tuple[str, str]] = []
        self.prompts: List[Tuple[str, str, Sequence[PromptOption]]] = []

    async def send_message(self, chat_id, text):
        self.messages.append((chat_id, text))

    async def send_prompt(self, chat_id, text, options=()):
        self.prompts.append((chat_id, text, list(options)))


class StubSuggester:
    def __init__(self, suggestions=None, error=None):
        self.suggestions = suggestions or CategorySuggestions(
            primary="Expenses:Food",
            alternative="Expenses:Shopping:Offline",
            suggested="Expenses:Food:Dining",
        )
        self.error = error
        self.calls = []

    async def suggest(self, merchant, additional_info, categories):
        self.calls.append((merchant, additional_info, list(categories)))
        if self.error is not None:
            raise self.error
        return self.suggestions
