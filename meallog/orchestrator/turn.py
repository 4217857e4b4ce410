"""Per-message handling context."""

from dataclasses import dataclass, field

from meallog.services.session_registry import ChatSession, Conversation


@dataclass
class TurnContext:
    """One inbound message being handled for a chat.

    Attributes:
        chat_id: Chat identity.
        session: The chat's session record.
        text: Inbound text, stripped.
        replies: Outbound messages produced so far, in order.
    """

    chat_id: str
    session: ChatSession
    text: str
    replies: list[str] = field(default_factory=list)

    @property
    def conversation(self) -> Conversation | None:
        return self.session.conversation

    def reply(self, message: str) -> None:
        self.replies.append(message)

    def end_conversation(self) -> None:
        self.session.conversation = None
