from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from core.app_config import AgentSpec, AppConfig, HITLDefaults


@dataclass(frozen=True)
class DispatcherSettings:
    """What the dispatcher needs from configuration, passed in explicitly."""

    agents: Dict[str, AgentSpec] = field(default_factory=dict)
    default_hitl: HITLDefaults = field(default_factory=HITLDefaults)
    dead_letter: bool = True

    @classmethod
    def from_config(cls, config: AppConfig) -> "DispatcherSettings":
        return cls(
            agents=dict(config.agents),
            default_hitl=config.hitl,
            dead_letter=config.dispatcher.dead_letter,
        )

    @classmethod
    def build(
        cls,
        agents: Mapping[str, AgentSpec | Mapping[str, Any]],
        *,
        default_hitl: Optional[HITLDefaults | Mapping[str, Any]] = None,
        dead_letter: bool = True,
    ) -> "DispatcherSettings":
        specs = {
            name: spec if isinstance(spec, AgentSpec) else AgentSpec.model_validate(dict(spec))
            for name, spec in agents.items()
        }
        if default_hitl is None:
            hitl = HITLDefaults()
        elif isinstance(default_hitl, HITLDefaults):
            hitl = default_hitl
        else:
            hitl = HITLDefaults.model_validate(dict(default_hitl))
        return cls(agents=specs, default_hitl=hitl, dead_letter=dead_letter)

    def agent(self, name: str) -> Optional[AgentSpec]:
        return self.agents.get(name)
