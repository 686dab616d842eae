"""
Bot State — per-instance conversation and user state.

botbuilder keeps conversation records under
"{channelId}/conversations/{conversationId}" and user records under
"{channelId}/users/{userId}". Every instance shares one storage backend,
so both keys are prefixed with the bot id here.

Records are read once per turn, cached on the TurnContext and written
back by save_changes() only when they changed. Nothing here is atomic
across turns; the orchestrator serializes turns per conversation so the
read at turn start and the write at turn end never interleave.
"""
from __future__ import annotations

from typing import Any

from botbuilder.core import ConversationState, Storage, TurnContext, UserState

# Conversation-state property names
DIALOG_STATE = "dialogState"
SESSION = "session"


class InstanceConversationState(ConversationState):

    def __init__(self, storage: Storage, bot_id: str):
        super().__init__(storage)
        self.bot_id = bot_id

    def get_storage_key(self, turn_context: TurnContext) -> str:
        return f"{self.bot_id}/{super().get_storage_key(turn_context)}"


class InstanceUserState(UserState):

    def __init__(self, storage: Storage, bot_id: str):
        super().__init__(storage)
        self.bot_id = bot_id

    def get_storage_key(self, turn_context: TurnContext) -> str:
        return f"{self.bot_id}/{super().get_storage_key(turn_context)}"


def new_session() -> dict[str, Any]:
    """Bookkeeping of a conversation the client has not bootstrapped yet."""
    return {"loaded": False, "subjects": [], "pendingCallback": None}
