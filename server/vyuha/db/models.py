from pydantic import AliasChoices, BaseModel, Field


class ControlSimulationIn(BaseModel):
    action: str = Field(min_length=1, max_length=32)


class ControlGodModeIn(BaseModel):
    message: str = Field(min_length=1, max_length=4000)


class ControlAgentActionIn(BaseModel):
    agent_id: str = Field(
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("agentId", "agent_id"),
    )
