"""User feedback tool and the broker that pairs questions with answers."""

import asyncio
import time
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tool_loop.commands import USER_FEEDBACK_ACTION, ToolResult, utc_now_iso
from tool_loop.logging import get_logger
from tool_loop.tools.registry import Tool, ToolContext

log = get_logger(__name__)

DEFAULT_FEEDBACK_TIMEOUT_MS = 300000


class UserFeedbackParameters(BaseModel):
    """Parameters of the ``get_user_feedback`` action."""

    model_config = ConfigDict(populate_by_name=True)

    question: str
    type: Literal["text", "choice"] = "text"
    choices: list[str] = Field(default_factory=list)
    timeout: int = DEFAULT_FEEDBACK_TIMEOUT_MS
    allow_custom_answer: bool = Field(default=False, alias="allowCustomAnswer")
    placeholder: str | None = None

    @model_validator(mode="after")
    def _check_question_and_choices(self) -> "UserFeedbackParameters":
        if not self.question.strip():
            raise ValueError("question is required and cannot be empty")
        if self.type == "choice" and not self.choices:
            raise ValueError('choices are required when type is "choice"')
        return self


class UserFeedbackResponse(BaseModel):
    """Answer given by the user to a pending feedback request."""

    request_id: str
    answer: str
    choice_index: int | None = None
    is_custom_answer: bool = False
    timestamp: str = Field(default_factory=utc_now_iso)
    response_time_ms: int = 0


class FeedbackBroker:
    """Holds pending feedback requests until the UI answers or cancels them."""

    def __init__(self):
        self._pending: dict[str, tuple[asyncio.Future[UserFeedbackResponse], float]] = {}

    def open(self, request_id: str) -> asyncio.Future[UserFeedbackResponse]:
        existing = self._pending.get(request_id)
        if existing is not None:
            return existing[0]
        future: asyncio.Future[UserFeedbackResponse] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (future, time.monotonic())
        return future

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def answer(
        self,
        request_id: str,
        answer: str,
        choice_index: int | None = None,
        is_custom_answer: bool = False,
    ) -> UserFeedbackResponse | None:
        """Resolve a pending request; returns None when nothing is pending."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            log.warning("No pending feedback request", request_id=request_id)
            return None
        future, started = entry
        response = UserFeedbackResponse(
            request_id=request_id,
            answer=answer,
            choice_index=choice_index,
            is_custom_answer=is_custom_answer,
            response_time_ms=int((time.monotonic() - started) * 1000),
        )
        if not future.done():
            future.set_result(response)
        return response

    def cancel(self, request_id: str) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        future, _ = entry
        if not future.done():
            future.cancel()
        return True

    async def wait_for(self, request_id: str, timeout_ms: int = DEFAULT_FEEDBACK_TIMEOUT_MS) -> UserFeedbackResponse:
        """Wait for an answer; raises TimeoutError and drops the request on timeout."""
        future = self.open(request_id)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            self.cancel(request_id)
            raise


class GetUserFeedbackTool(Tool):
    """Ask the user a question; the answer arrives later through the broker."""

    name = USER_FEEDBACK_ACTION
    description = "Prompts user for text or multiple choice input during agent execution."
    parameters_model = UserFeedbackParameters
    timeout_seconds = 5.0

    def __init__(self, broker: FeedbackBroker | None = None):
        self.broker = broker or FeedbackBroker()

    async def execute(self, parameters: dict[str, Any], context: ToolContext) -> ToolResult:
        feedback_id = f"feedback_{uuid.uuid4().hex[:12]}"
        self.broker.open(feedback_id)
        log.info("User feedback requested", feedback_id=feedback_id, request_id=context.request_id)
        return ToolResult.ok(
            {
                "feedbackId": feedback_id,
                "status": "pending",
                "question": parameters["question"],
                "type": parameters.get("type", "text"),
                "choices": parameters.get("choices", []),
                "timeout": parameters.get("timeout", DEFAULT_FEEDBACK_TIMEOUT_MS),
                "allowCustomAnswer": parameters.get("allowCustomAnswer", False),
                "placeholder": parameters.get("placeholder"),
                "startTime": utc_now_iso(),
            },
            request_id=context.request_id,
        )
