"""
Prompts sent to the LLM collaborators.

Kept short: the language detector only needs a one-word answer.
"""

from flowbot.config import settings

LANGUAGE_DETECTION_PROMPT = f"""
You detect the language of chat messages sent to {settings.bot.name}, a
scheduling and payments assistant.

Reply with exactly one lowercase code and nothing else:
- "es" if the message is written in Spanish
- "en" if the message is written in English
- "unknown" if it is neither, or you cannot tell

Names, email addresses, numbers and product codes carry no language signal.
""".strip()
