"""Pydantic schemas for the query endpoints."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from src.services.query_engine import QueryMode

# =============================================================================
# Request Schemas
# =============================================================================


class QueryMessage(BaseModel):
    """One turn of the conversation."""

    role: Literal["user", "assistant"]
    content: str = Field(min_length=1, max_length=20000)


class QueryRequest(BaseModel):
    """A question against a project's knowledge graph."""

    messages: list[QueryMessage] = Field(
        min_length=1,
        description="Conversation so far; the last user message is the question",
    )
    mode: QueryMode = Field(default=QueryMode.LOCAL, description="Retrieval strategy")
    system_prompts: list[str] = Field(
        default_factory=list,
        max_length=10,
        description="Extra system prompts appended after the mode prompt",
    )
    model: str | None = Field(default=None, description="Chat model override")
    thinking: bool = Field(default=False, description="Enable the model's thinking mode")
    enable_clarification: bool | None = Field(
        default=None,
        description="Let the agent ask a clarifying question (agentic mode; None = server default)",
    )

    @field_validator("messages")
    @classmethod
    def has_user_message(cls, value: list[QueryMessage]) -> list[QueryMessage]:
        if not any(message.role == "user" and message.content.strip() for message in value):
            raise ValueError("messages must contain a user message")
        return value


# =============================================================================
# Response Schemas
# =============================================================================


class TraceResponse(BaseModel):
    """What the query looked at."""

    considered_source_ids: list[str] = Field(description="Files whose passages were considered")
    used_source_ids: list[str] = Field(description="Files whose passages were used")
    queried_entity_ids: list[str]
    queried_relationship_ids: list[str]
    queried_entity_types: list[str]
    considered_files: int
    used_files: int


class QueryResponse(BaseModel):
    """Answer with its citations separated out."""

    answer: str = Field(description="Answer text with citation markers removed")
    raw_answer: str = Field(description="Answer text as generated, markers included")
    citations: list[str] = Field(description="Cited ids in order of first appearance")
    mode: QueryMode
    trace: TraceResponse
