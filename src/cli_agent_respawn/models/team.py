"""Claude Code agent-team models (as written under ~/.claude)."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

TEAM_LEAD_AGENT_TYPE = "team-lead"
TASK_STATUS_COMPLETED = "completed"


class TeamMember(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    agent_id: str = Field("", alias="agentId")
    name: str = ""
    agent_type: str = Field("", alias="agentType")


class TeamConfig(BaseModel):
    """Contents of ``teams/<name>/config.json``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    lead_session_id: Optional[str] = Field(None, alias="leadSessionId")
    members: List[TeamMember] = Field(default_factory=list)

    @property
    def teammates(self) -> List[TeamMember]:
        """Members other than the lead."""
        return [m for m in self.members if m.agent_type != TEAM_LEAD_AGENT_TYPE]


class TeamTask(BaseModel):
    """One task file under ``tasks/<team>/``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    subject: str = ""
    status: str = "pending"
    owner: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_internal(self) -> bool:
        return bool(self.metadata.get("_internal"))

    @property
    def is_active(self) -> bool:
        return self.status != TASK_STATUS_COMPLETED and not self.is_internal
