"""LLM-backed agent roles and their strict JSON contracts.

Each role sends one system prompt plus one user message and expects a single
JSON object back. The object is located with ``extract_json_from_response``
(code fences and surrounding prose are tolerated) and validated with pydantic.
Anything that does not yield a conforming object raises ``AgentProtocolError``;
the orchestrator turns that into a task error.
"""

from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from agents.llm import LLMClient, LLMResponse, extract_json_from_response
from agents.prompts import (
    CODER_PROMPT,
    FIX_LOOP_PROMPT,
    PLANNER_PROMPT,
    REVIEWER_PROMPT,
    SUMMARIZER_PROMPT,
)
from config import Settings

logger = structlog.get_logger()


class AgentProtocolError(Exception):
    """An agent response could not be parsed into its role's JSON shape.

    Attributes:
        role: Agent role that produced the response
        raw: The unparsed response content
    """

    def __init__(self, role: str, raw: str, reason: str) -> None:
        self.role = role
        self.raw = raw
        self.reason = reason
        super().__init__(f"{role} agent returned an invalid response: {reason}")


class _RoleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EditInstruction(_RoleModel):
    """Full replacement content for one file."""

    path: str
    language: str | None = None
    new_content: str


class AgentResult(_RoleModel):
    """Coder, fix-loop and reviewer output."""

    notes: str = ""
    edits: list[EditInstruction]

    def for_paths(self, allowed: list[str]) -> list[EditInstruction]:
        """Edits whose path is in ``allowed``, in response order."""
        allowed_set = set(allowed)
        return [edit for edit in self.edits if edit.path in allowed_set]

    def proposal(self, edits: list[EditInstruction]) -> dict[str, Any]:
        """Camel-cased JSON shape handed to the reviewer."""
        return {
            "notes": self.notes,
            "edits": [edit.model_dump(by_alias=True) for edit in edits],
        }


class PlanResult(_RoleModel):
    notes: str = ""
    focus_paths: list[str]


class SummaryResult(_RoleModel):
    summary: str
    outcome: Literal["success", "fail", "partial"]


ResultT = TypeVar("ResultT", bound=BaseModel)


@dataclass
class AgentReply(Generic[ResultT]):
    """A validated role result plus the raw LLM response behind it."""

    result: ResultT
    response: LLMResponse

    @property
    def raw(self) -> str:
        return self.response.content

    @property
    def tokens(self) -> int:
        return self.response.metrics.total_tokens


def parse_role_output(role: str, content: str, model: type[ResultT]) -> ResultT:
    """Parse one agent response into ``model``.

    Raises:
        AgentProtocolError: If no JSON object is found or it does not validate.
    """
    data = extract_json_from_response(content)
    if data is None:
        raise AgentProtocolError(role, content, "no JSON object found")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise AgentProtocolError(role, content, str(e)) from e


class Agents:
    """The five agent roles used by the orchestrator.

    Attributes:
        llm: Client used for every call
        settings: Source of per-role models and the sampling temperature
    """

    def __init__(self, llm: LLMClient, settings: Settings) -> None:
        self.llm = llm
        self.settings = settings

    async def _ask(
        self,
        role: str,
        system_prompt: str,
        user_message: str,
        model: type[ResultT],
        task_id: str | None,
    ) -> AgentReply[ResultT]:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
        response = await self.llm.call(
            messages,
            model=self.settings.model_for(role),
            temperature=self.settings.llm_temperature,
            task_id=task_id,
            agent=role,
        )
        try:
            result = parse_role_output(role, response.content, model)
        except AgentProtocolError as e:
            logger.warning(
                "agent_protocol_error",
                role=role,
                task_id=task_id,
                reason=e.reason,
                content_preview=response.content[:200],
            )
            raise
        return AgentReply(result=result, response=response)

    async def plan(self, message: str, task_id: str | None = None) -> AgentReply[PlanResult]:
        return await self._ask("planner", PLANNER_PROMPT, message, PlanResult, task_id)

    async def code(self, message: str, task_id: str | None = None) -> AgentReply[AgentResult]:
        return await self._ask("coder", CODER_PROMPT, message, AgentResult, task_id)

    async def fix(self, message: str, task_id: str | None = None) -> AgentReply[AgentResult]:
        return await self._ask("fixer", FIX_LOOP_PROMPT, message, AgentResult, task_id)

    async def review(self, message: str, task_id: str | None = None) -> AgentReply[AgentResult]:
        return await self._ask("reviewer", REVIEWER_PROMPT, message, AgentResult, task_id)

    async def summarize(
        self, message: str, task_id: str | None = None
    ) -> AgentReply[SummaryResult]:
        return await self._ask("summarizer", SUMMARIZER_PROMPT, message, SummaryResult, task_id)
