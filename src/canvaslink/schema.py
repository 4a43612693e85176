"""Pydantic models for the agent server's REST payloads.

Field names follow the server's camelCase JSON through aliases; unknown keys
are ignored so newer servers do not break decoding. Timestamps on the wire are
milliseconds since the epoch.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


def ms_to_datetime(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class HealthInfo(_WireModel):
    healthy: bool
    version: str


class SessionTime(_WireModel):
    created: float | None = None
    updated: float | None = None


class SessionInfo(_WireModel):
    id: str
    slug: str | None = None
    project_id: str | None = Field(default=None, alias="projectID")
    directory: str | None = None
    title: str | None = None
    version: str | None = None
    time: SessionTime | None = None

    @property
    def created_at(self) -> datetime | None:
        return ms_to_datetime(self.time.created if self.time else None)


class MessageTime(_WireModel):
    created: float | None = None
    updated: float | None = None
    completed: float | None = None


class MessageInfo(_WireModel):
    id: str
    role: str = "assistant"
    time: MessageTime | None = None
    model_id: str | None = Field(default=None, alias="modelID")
    session_id: str | None = Field(default=None, alias="sessionID")


class ToolUse(_WireModel):
    id: str | None = None
    name: str | None = None
    status: str | None = None
    input: str | None = None
    output: str | None = None
    permission_id: str | None = Field(default=None, alias="permissionID")


class MessagePart(_WireModel):
    id: str
    type: str
    text: str | None = None
    tool_use: ToolUse | None = None


class ServerMessage(_WireModel):
    info: MessageInfo
    parts: List[MessagePart] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def role(self) -> str:
        return self.info.role

    @property
    def content(self) -> str:
        return "\n".join(part.text for part in self.parts if part.type == "text" and part.text is not None)

    @property
    def tool_use(self) -> ToolUse | None:
        for part in self.parts:
            if part.type == "tool_use" and part.tool_use is not None:
                return part.tool_use
        return None


class PromptPart(_WireModel):
    type: str = "text"
    text: str


class PromptModel(_WireModel):
    provider_id: str = Field(alias="providerID")
    model_id: str = Field(alias="modelID")

    @classmethod
    def parse(cls, model: str | None) -> "PromptModel | None":
        """Split ``provider/model`` on the first slash; anything else is no model."""
        if not model:
            return None
        provider, sep, name = model.partition("/")
        if not sep or not provider or not name:
            return None
        return cls(providerID=provider, modelID=name)


class PromptRequest(_WireModel):
    parts: List[PromptPart]
    model: PromptModel | None = None

    @classmethod
    def from_text(cls, text: str, model: str | None = None) -> "PromptRequest":
        return cls(parts=[PromptPart(text=text)], model=PromptModel.parse(model))

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ProviderModel(_WireModel):
    id: str
    name: str = ""
    provider_id: str | None = Field(default=None, alias="providerID")
    family: str | None = None
    cost: Dict[str, Any] | None = None

    @property
    def is_free(self) -> bool:
        if not self.cost:
            return False
        return all(not value for value in self.cost.values() if isinstance(value, (int, float)))


class Provider(_WireModel):
    id: str
    name: str = ""
    source: str | None = None
    models: Dict[str, ProviderModel] = Field(default_factory=dict)


class ProvidersCatalog(_WireModel):
    providers: List[Provider] = Field(default_factory=list)
    default_model: Dict[str, str] = Field(default_factory=dict, alias="default")
