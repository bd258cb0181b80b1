"""Agent roles, prompts and LLM integration.

This module exports the key components needed for agent execution:
- LLM client with retry logic, fallback and metrics events
- System prompts and message builders for each agent role
- Role contracts and the Agents facade used by the orchestrator
"""

from agents.llm import (
    LLMClient,
    LLMMetrics,
    LLMResponse,
    MockLLMClient,
    extract_json_from_response,
)
from agents.prompts import (
    CODER_PROMPT,
    FIX_LOOP_PROMPT,
    PLANNER_PROMPT,
    REVIEWER_PROMPT,
    SUMMARIZER_PROMPT,
)
from agents.roles import (
    AgentProtocolError,
    AgentReply,
    AgentResult,
    Agents,
    EditInstruction,
    PlanResult,
    SummaryResult,
    parse_role_output,
)

__all__ = [
    # LLM
    "LLMClient",
    "LLMMetrics",
    "LLMResponse",
    "MockLLMClient",
    "extract_json_from_response",
    # Prompts
    "CODER_PROMPT",
    "FIX_LOOP_PROMPT",
    "PLANNER_PROMPT",
    "REVIEWER_PROMPT",
    "SUMMARIZER_PROMPT",
    # Roles
    "AgentProtocolError",
    "AgentReply",
    "AgentResult",
    "Agents",
    "EditInstruction",
    "PlanResult",
    "SummaryResult",
    "parse_role_output",
]
