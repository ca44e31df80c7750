"""Conversation engine: the message list and its one outstanding request.

Command handlers mutate the owned ConversationState and return effects
(see effects.py). Completion results come back through complete() / fail()
keyed by the request id handed out in RequestCompletion.

Every position that must survive an awaited request is tracked by message
id and re-resolved when the response lands. Edits and deletes made while a
request is in flight therefore never misplace a reply: if its anchor is
gone the reply is dropped.
"""

from dataclasses import dataclass, field

import structlog

from llmchat.api.schemas import CompletionResponse, Message, new_id
from llmchat.engine.context_builder import RequestConfig, build_completion_request, preceding_user_index
from llmchat.engine.effects import (
    Busy,
    CredentialMissing,
    Effect,
    RequestCompletion,
    SaveRequested,
    SaveTrigger,
)

logger = structlog.get_logger(__name__)

EMPTY_RESPONSE_MARKER = "Error: Empty response"
FAILED_RETRY_MARKER = "Error: No response received"


@dataclass
class PlaceholderRef:
    """Loading message inserted by a user-message retry."""
    placeholder_id: str
    original_user_message_id: str


@dataclass
class ConversationState:
    """Active conversation as seen by the UI.

    Attributes:
        messages: Ordered message list; position is conversation order.
        input_text: Pending input buffer.
        is_generating: True while a completion request is in flight.
        error: Last transport/API error, or None.
        retrying_message_id: Id of the message that will receive a retried reply.
        placeholder: Set while a retry placeholder is waiting for its reply.
        total_tokens: Running token usage of the session.
    """
    messages: list[Message] = field(default_factory=list)
    input_text: str = ""
    is_generating: bool = False
    error: str | None = None
    retrying_message_id: str | None = None
    placeholder: PlaceholderRef | None = None
    total_tokens: int = 0


@dataclass(frozen=True)
class _PendingRequest:
    anchor_id: str
    epoch: int
    is_retry: bool


class ConversationEngine:
    """Owns one ConversationState and the requests issued for it."""

    def __init__(self, state: ConversationState | None = None):
        self.state = state or ConversationState()
        self._epoch = 0
        self._pending: dict[str, _PendingRequest] = {}

    def _index_of(self, message_id: str | None) -> int | None:
        if message_id is None:
            return None
        for index, message in enumerate(self.state.messages):
            if message.id == message_id:
                return index
        return None

    def _dispatch(self, history: list[Message], config: RequestConfig, anchor_id: str, is_retry: bool) -> RequestCompletion:
        request_id = new_id()
        self._pending[request_id] = _PendingRequest(anchor_id=anchor_id, epoch=self._epoch, is_retry=is_retry)
        self.state.is_generating = True
        logger.info("chat.dispatch", request_id=request_id, retry=is_retry, messages=len(history), model=config.model)
        return RequestCompletion(
            request_id=request_id,
            request=build_completion_request(history, config),
            api_key=config.api_key,
        )

    # --- commands -------------------------------------------------------

    def change_input(self, text: str) -> list[Effect]:
        self.state.input_text = text
        return []

    def send(self, config: RequestConfig) -> list[Effect]:
        """Append the input buffer as a user message and request a reply.

        Returns:
            SaveRequested(INITIAL) when this is the first message, followed by
            either RequestCompletion or CredentialMissing. [Busy()] while a
            request is in flight; [] for a blank buffer.
        """
        text = self.state.input_text.strip()
        if not text:
            return []
        if self.state.is_generating:
            logger.info("chat.send_rejected", reason="busy")
            return [Busy()]

        self.state.error = None
        was_empty = not self.state.messages
        user_message = Message(role="user", content=text)
        self.state.messages.append(user_message)
        self.state.input_text = ""

        effects: list[Effect] = []
        if was_empty:
            effects.append(SaveRequested(SaveTrigger.INITIAL))
        if not config.has_credential:
            logger.info("chat.credential_missing")
            effects.append(CredentialMissing())
            return effects

        effects.append(self._dispatch(list(self.state.messages), config, anchor_id=user_message.id, is_retry=False))
        return effects

    def edit_message(self, message_id: str, new_content: str) -> list[Effect]:
        """Replace a message's content, capturing the pristine text on the first edit."""
        index = self._index_of(message_id)
        if index is None:
            logger.debug("chat.edit_missing", message_id=message_id)
            return []

        message = self.state.messages[index]
        updates = {"content": new_content, "is_edited": True}
        if not message.is_edited:
            updates["original_content"] = message.content
        self.state.messages[index] = message.model_copy(update=updates)
        return [SaveRequested(SaveTrigger.EDIT)]

    def delete_message(self, message_id: str) -> list[Effect]:
        index = self._index_of(message_id)
        if index is None:
            logger.debug("chat.delete_missing", message_id=message_id)
            return []
        del self.state.messages[index]
        return [SaveRequested(SaveTrigger.DELETE)]

    def retry(self, message: Message, config: RequestConfig) -> list[Effect]:
        """Re-request the reply for a user or assistant message.

        An assistant message is replaced in place. For a user message the reply
        replaces the assistant message right after it, or a loading placeholder
        inserted there when there is none.
        """
        if message.role not in ("user", "assistant"):
            return []
        if not config.has_credential:
            return [CredentialMissing()]
        if self.state.is_generating:
            logger.info("chat.retry_rejected", reason="busy", message_id=message.id)
            return [Busy()]

        index = self._index_of(message.id)
        if index is None:
            logger.debug("chat.retry_missing", message_id=message.id)
            return []

        messages = self.state.messages
        if messages[index].role == "assistant":
            user_index = preceding_user_index(messages, index)
            if user_index is None:
                logger.warning("chat.retry_no_user_message", message_id=message.id)
                return []
            history = messages[:user_index + 1]
            target_id = messages[index].id
        else:
            history = messages[:index + 1]
            following = messages[index + 1] if index + 1 < len(messages) else None
            if following is not None and following.role == "assistant":
                target_id = following.id
            else:
                placeholder = Message(role="assistant", content="", is_loading=True)
                messages.insert(index + 1, placeholder)
                self.state.placeholder = PlaceholderRef(placeholder.id, messages[index].id)
                target_id = placeholder.id

        self.state.error = None
        self.state.retrying_message_id = target_id
        return [self._dispatch(history, config, anchor_id=target_id, is_retry=True)]

    # --- request results ------------------------------------------------

    def _take_pending(self, request_id: str) -> _PendingRequest | None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.warning("chat.unknown_request", request_id=request_id)
            return None
        if pending.epoch != self._epoch:
            logger.info("chat.stale_response_dropped", request_id=request_id)
            return None
        return pending

    def _settle(self) -> None:
        self.state.is_generating = False
        self.state.retrying_message_id = None
        self.state.placeholder = None

    def complete(self, request_id: str, response: CompletionResponse) -> list[Effect]:
        """Apply a successful completion.

        Returns:
            [SaveRequested] when the reply landed in the list, else [].
        """
        pending = self._take_pending(request_id)
        if pending is None:
            return []

        self.state.total_tokens += response.total_tokens
        self.state.error = None
        reply = Message(role="assistant", content=response.content or EMPTY_RESPONSE_MARKER)

        effects: list[Effect] = []
        if pending.is_retry:
            index = self._index_of(pending.anchor_id)
            if index is not None:
                self.state.messages[index] = reply
                effects.append(SaveRequested(SaveTrigger.RETRY_RESPONSE))
        elif self._index_of(pending.anchor_id) is not None:
            self.state.messages.append(reply)
            effects.append(SaveRequested(SaveTrigger.RESPONSE))

        if not effects:
            logger.info("chat.reply_dropped", request_id=request_id, anchor_id=pending.anchor_id)
        self._settle()
        return effects

    def fail(self, request_id: str, error: str) -> list[Effect]:
        """Record a failed completion. A retry placeholder becomes an error marker."""
        pending = self._take_pending(request_id)
        if pending is None:
            return []

        self.state.error = error
        placeholder = self.state.placeholder
        if pending.is_retry and placeholder is not None:
            index = self._index_of(placeholder.placeholder_id)
            if index is not None:
                self.state.messages[index] = self.state.messages[index].model_copy(
                    update={"content": FAILED_RETRY_MARKER, "is_loading": False}
                )
        logger.warning("chat.request_failed", request_id=request_id, retry=pending.is_retry, error=error)
        self._settle()
        return []

    # --- session switches -----------------------------------------------

    def reset(self) -> None:
        """Start an empty conversation. In-flight replies will be ignored."""
        self.load([], 0)

    def load(self, messages: list[Message], total_tokens: int) -> None:
        """Replace the conversation with a stored one. In-flight replies will be ignored."""
        self._epoch += 1
        self.state = ConversationState(
            messages=list(messages),
            input_text=self.state.input_text,
            total_tokens=total_tokens,
        )
