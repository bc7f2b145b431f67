"""Roles, notes and results for council runs."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from llm.citations import Citation


class RoleKind(str, Enum):
    RESEARCHER = "researcher"
    ANALYST = "analyst"
    EDITOR = "editor"
    CRITIC = "critic"
    CUSTOM = "custom"


class Strategy(str, Enum):
    CONSENSUS = "consensus"
    DELIBERATE = "deliberate"
    CRITIC = "critic"


class CouncilRole(BaseModel):
    """One agent archetype taking part in a council run."""

    name: str = Field(min_length=1, description="Display name, used to label the role's notes")
    kind: RoleKind = RoleKind.ANALYST
    instructions: Optional[str] = Field(
        default=None,
        description="Role instructions; required for custom roles, overrides the archetype otherwise",
    )

    @model_validator(mode="after")
    def _custom_needs_instructions(self) -> "CouncilRole":
        if self.kind == RoleKind.CUSTOM and not self.instructions:
            raise ValueError(f"custom role '{self.name}' must supply instructions")
        return self


@dataclass(frozen=True)
class CouncilContext:
    query: str
    retrieved_context: str
    org_name: str


@dataclass
class CouncilNote:
    """Output of one role invocation."""

    role: str
    notes: str
    citations: list[Citation] = field(default_factory=list)
    tokens_used: int = 0
    round: int = 0  # zero-based; the critic addendum is recorded as round 1


@dataclass
class CouncilResult:
    final: str
    panel: list[CouncilNote]
    all_citations: list[Citation]
    total_tokens_in: int
    total_tokens_out: int
    strategy: str


def default_roles() -> list[CouncilRole]:
    return [
        CouncilRole(name="Researcher", kind=RoleKind.RESEARCHER),
        CouncilRole(name="Analyst", kind=RoleKind.ANALYST),
        CouncilRole(name="Editor", kind=RoleKind.EDITOR),
    ]


def roles_from_names(names: list[str]) -> list[CouncilRole]:
    """Build roles from archetype names, e.g. ``["researcher", "critic"]``.

    Raises:
        ValueError: a name is not a built-in archetype.
    """
    roles = []
    for raw in names:
        name = raw.strip().lower()
        if not name:
            continue
        try:
            kind = RoleKind(name)
        except ValueError:
            raise ValueError(f"Unknown council role: {raw!r}") from None
        if kind == RoleKind.CUSTOM:
            raise ValueError("custom roles need instructions and cannot be built from a name")
        roles.append(CouncilRole(name=name.title(), kind=kind))
    return roles
