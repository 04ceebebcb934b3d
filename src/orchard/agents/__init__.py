from orchard.agents.backends import (
    AgentCliBackend,
    ResilientBackend,
    RetryPolicy,
    TextBackend,
    build_text_backend,
)
from orchard.agents.registry import (
    AGENT_NAMES,
    Agent,
    AgentStatus,
    CommandClass,
    SkillFormat,
    agent_session_id,
    all_agent_status,
    detect_available,
    known_agents,
    resolve_agent,
)

__all__ = [
    "AGENT_NAMES",
    "Agent",
    "AgentCliBackend",
    "AgentStatus",
    "CommandClass",
    "ResilientBackend",
    "RetryPolicy",
    "SkillFormat",
    "TextBackend",
    "agent_session_id",
    "all_agent_status",
    "build_text_backend",
    "detect_available",
    "known_agents",
    "resolve_agent",
]
