"""AI helpers around task creation: title generation and form-field dialog."""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from camus.errors import UpstreamError, ValidationError
from camus.llm import LLMAdapter
from camus.storage.base import TaskStorage

logger = logging.getLogger(__name__)

TargetField = Literal["topic", "persona", "questions", "basicKnowledge", "reportDimensions"]

TITLE_FALLBACK_CHARS = 40

TITLE_SYSTEM_PROMPT = (
    "You name research tasks. Given a survey topic, return JSON with key 'title': "
    "a short title of at most 12 words, no quotes, no trailing punctuation."
)

FIELD_SYSTEM_PROMPTS: dict[str, str] = {
    "topic": (
        "You help a user sharpen the topic and objective of a synthetic survey. "
        "Ask at most one clarifying question when needed."
    ),
    "persona": (
        "You help a user describe the target respondents of a synthetic survey: "
        "demographics, habits and motivations."
    ),
    "questions": (
        "You draft survey questionnaires. Keep questions neutral, one idea per "
        "question, and cover the stated objective."
    ),
    "basicKnowledge": (
        "You collect background knowledge relevant to a survey topic: market "
        "context, known facts and terminology."
    ),
    "reportDimensions": (
        "You propose the dimensions a survey report should analyse, each with a "
        "one-line rationale."
    ),
}

DIALOG_RESPONSE_INSTRUCTIONS = (
    "Return JSON with keys 'content' (your reply to the user) and 'new_value' "
    "(the proposed new value for the field, or an empty string)."
)

DIALOG_CONTEXT_TEMPLATE = """Current survey draft:
- Topic: {topic}
- Target persona: {persona}
- Questionnaire: {questions}
- Background knowledge: {basic_knowledge}
- Report dimensions: {report_dimensions}
"""

NOT_YET_GENERATED = "(not generated yet)"


class TaskTitle(BaseModel):
    title: str = Field(min_length=1)


class DialogReply(BaseModel):
    content: str
    new_value: str = ""


class TaskAssistant:
    def __init__(self, *, llm_adapter: LLMAdapter | None, timeout_s: float = 15.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def generate_title(self, topic: str) -> str:
        topic = topic.strip()
        if not topic:
            raise ValidationError("Topic is required")
        if self.llm_adapter is None:
            return topic[:TITLE_FALLBACK_CHARS].strip()

        try:
            result = self.llm_adapter.generate_structured(
                messages=[
                    {"role": "system", "content": TITLE_SYSTEM_PROMPT},
                    {"role": "user", "content": f"topic: {topic}"},
                ],
                response_model=TaskTitle,
                timeout_s=self.timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            raise UpstreamError("Failed to generate title", details={"reason": str(exc)}) from exc
        return result.title.strip()

    def generate_title_in_background(self, storage: TaskStorage, task_id: str, topic: str) -> None:
        """Fill in the task title; never raises."""
        try:
            title = self.generate_title(topic)
            if title:
                storage.update_task(task_id, {"title": title})
            logger.info("task_title event=generated task_id=%s", task_id)
        except Exception:  # noqa: BLE001
            logger.exception("task_title event=failed task_id=%s", task_id)

    def generate_dialog(
        self,
        *,
        params: dict[str, Any],
        target_field: str,
        messages: list[dict[str, str]] | None = None,
    ) -> DialogReply:
        system_prompt = FIELD_SYSTEM_PROMPTS.get(target_field)
        if system_prompt is None:
            raise ValidationError(
                "Invalid targetField",
                details={"allowed": sorted(FIELD_SYSTEM_PROMPTS)},
            )
        if self.llm_adapter is None:
            raise UpstreamError("AI assistant is not configured")

        context = DIALOG_CONTEXT_TEMPLATE.format(
            topic=params.get("topic") or "",
            persona=params.get("persona") or "",
            questions=params.get("questions") or NOT_YET_GENERATED,
            basic_knowledge=params.get("basicKnowledge") or NOT_YET_GENERATED,
            report_dimensions=params.get("reportDimensions") or NOT_YET_GENERATED,
        )
        conversation = [
            {"role": "system", "content": f"{system_prompt}\n{DIALOG_RESPONSE_INSTRUCTIONS}"},
            {"role": "user", "content": context},
            *(messages or []),
        ]
        try:
            return self.llm_adapter.generate_structured(
                messages=conversation,
                response_model=DialogReply,
                timeout_s=self.timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_dialog event=failed target_field=%s reason=%s", target_field, exc)
            raise UpstreamError("Failed to generate dialog") from exc
