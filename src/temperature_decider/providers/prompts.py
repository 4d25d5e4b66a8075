"""Prompt templates shared by the provider adapters."""

SYSTEM_PROMPT = (
    "You are a text completion assistant helping to find the list of next probable logical and "
    "grammatical and complete words or fullstop based on the temperature setting. IMPORTANT: Output "
    "ONLY the next grammatical and logical word that naturally continues the text, but not the next "
    "letter or spaces or quotes or incomplete words."
)


def user_prompt(text: str) -> str:
    return f'Complete this text with the next word: "{text}"'


def combined_prompt(text: str) -> str:
    """System and user prompt in one string, for backends without a reliable system role."""
    return f"{SYSTEM_PROMPT}\n\n{user_prompt(text)}"
