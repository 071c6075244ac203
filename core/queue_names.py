"""Helpers for constructing and parsing queue names shared with producers."""

from dataclasses import dataclass
from typing import Iterable, Optional

QUEUE_NAMESPACE = "claude"
AGENT_QUEUE_PREFIX = f"{QUEUE_NAMESPACE}.agents"
APPROVAL_QUEUE_PREFIX = f"{QUEUE_NAMESPACE}.approvals"


@dataclass(frozen=True)
class AgentQueueParts:
    agent_name: str
    suffix: str


def agent_request_queue(agent_name: str) -> str:
    return ".".join([AGENT_QUEUE_PREFIX, agent_name, "requests"])


def agent_dead_letter_queue(agent_name: str) -> str:
    return ".".join([AGENT_QUEUE_PREFIX, agent_name, "dead_letter"])


def approval_queue(correlation_id: str, approval_id: Optional[str] = None) -> str:
    """Ephemeral decision queue.

    One queue per tool invocation: a job may wait on several approvals in turn,
    so the approval id is appended whenever it is known.
    """
    parts = [APPROVAL_QUEUE_PREFIX, correlation_id]
    if approval_id:
        parts.append(approval_id)
    return ".".join(parts)


def agent_queue_names(agent_names: Iterable[str]) -> list[str]:
    return [agent_request_queue(name) for name in agent_names]


def parse_agent_queue(name: str) -> Optional[AgentQueueParts]:
    prefix = AGENT_QUEUE_PREFIX + "."
    if not name.startswith(prefix):
        return None
    rest = name[len(prefix) :]
    # Agent names may contain dots; the suffix is always the last segment.
    agent_name, sep, suffix = rest.rpartition(".")
    if not sep or not agent_name or not suffix:
        return None
    return AgentQueueParts(agent_name=agent_name, suffix=suffix)
