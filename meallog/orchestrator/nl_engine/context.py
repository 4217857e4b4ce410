"""Flatten a conversation history into interpreter input.

The interpreter is stateless, so every call receives the whole dialogue:

    Meal description: <first user message>
    Clarification question: <assistant question>
    User answered: <user reply>
    Additional info: <user message not preceded by a question>
"""


def build_interpreter_context(history: list[dict]) -> str:
    """Render role-tagged messages as a single interpreter prompt.

    Args:
        history: Ordered [{role, content, ...}] messages.

    Returns:
        The flattened context string.
    """
    parts: list[str] = []
    for index, message in enumerate(history):
        if message.get("role") != "user":
            continue
        content = message.get("content", "")
        if not parts:
            parts.append(f"Meal description: {content}")
        elif index > 0 and history[index - 1].get("role") == "assistant":
            question = history[index - 1].get("content", "")
            parts.append(f"\nClarification question: {question}")
            parts.append(f"\nUser answered: {content}")
        else:
            parts.append(f"\nAdditional info: {content}")
    return "".join(parts)

