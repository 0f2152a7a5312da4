"""Wire concrete infrastructure into an ``Orchestrator``."""

from __future__ import annotations

import logging
from typing import List, Optional

from agent_relay.application.connector_manager import ConnectorManager
from agent_relay.application.forced_tools import ForcedToolSafetyNet
from agent_relay.application.heartbeat import HeartbeatService
from agent_relay.application.orchestrator import Orchestrator
from agent_relay.application.run_queue import RunQueue
from agent_relay.application.task_queue import TaskQueue
from agent_relay.application.turn_executor import TurnExecutor
from agent_relay.config import RelayConfig, credential_secret
from agent_relay.domain import Agent, Connector, Credential, Session, Skill, Task

from .connectors import build_platform_adapters
from .providers import PROVIDERS, ProviderRegistry
from .providers.gateway import ProviderGateway
from .storage import CredentialVault, JsonCollection, load_or_create_key
from .tool_agent import ToolLoopAgent
from .tools import SessionToolFactory

logger = logging.getLogger(__name__)


def build_orchestrator(config: RelayConfig, *, adapters: Optional[dict] = None) -> Orchestrator:
    """Build every collaborator from ``config``.

    ``adapters`` replaces the platform adapter table (tests pass fakes).
    """
    data_dir = config.data_dir
    sessions: JsonCollection[Session] = JsonCollection(data_dir, "sessions", Session)
    agents: JsonCollection[Agent] = JsonCollection(data_dir, "agents", Agent)
    skills: JsonCollection[Skill] = JsonCollection(data_dir, "skills", Skill)
    connector_store: JsonCollection[Connector] = JsonCollection(data_dir, "connectors", Connector)
    task_store: JsonCollection[Task] = JsonCollection(data_dir, "tasks", Task)
    vault = CredentialVault(
        JsonCollection(data_dir, "credentials", Credential),
        load_or_create_key(data_dir, credential_secret()),
    )

    catalog = ProviderRegistry(PROVIDERS)
    gateway = ProviderGateway(catalog, vault, timeout_s=config.providers.timeout_s)

    connectors = ConnectorManager(
        connectors=connector_store,
        agents=agents,
        sessions=sessions,
        credentials=vault,
        adapters=adapters if adapters is not None else build_platform_adapters(config),
        lock_wait_s=config.connectors.lock_wait_s,
        start_timeout_s=config.connectors.start_timeout_s,
    )
    tool_factory = SessionToolFactory(connectors, agents, sessions)
    tool_agent = ToolLoopAgent(
        catalog,
        max_steps=config.providers.tool_max_steps,
        timeout_s=config.providers.timeout_s,
    )

    safety_net = None
    if config.forced_tools.enabled:
        def agent_names() -> List[str]:
            return [agent.name for agent in agents.values()]
        safety_net = ForcedToolSafetyNet(agent_names=agent_names)

    executor = TurnExecutor(
        sessions=sessions,
        agents=agents,
        skills=skills,
        credentials=vault,
        catalog=catalog,
        gateway=gateway,
        tool_agent=tool_agent,
        tool_factory=tool_factory,
        safety_net=safety_net,
        user_prompt=config.user_prompt,
        history_limit=config.providers.history_limit,
    )

    max_runtime_s = config.runs.default_max_runtime_s
    run_queue = RunQueue(
        executor.execute,
        sessions,
        max_recent_runs=config.runs.max_recent_runs,
        default_max_runtime_ms=int(max_runtime_s * 1000) if max_runtime_s else None,
    )
    connectors.bind_run_queue(run_queue)
    tool_factory.bind_run_queue(run_queue)

    heartbeat = HeartbeatService(config.heartbeat, sessions=sessions, agents=agents, run_queue=run_queue)
    tasks = TaskQueue(task_store, agents, sessions, run_queue)
    logger.debug("Orchestrator built (data_dir=%s)", data_dir)

    return Orchestrator(
        config=config,
        sessions=sessions,
        agents=agents,
        skills=skills,
        connector_store=connector_store,
        vault=vault,
        catalog=catalog,
        gateway=gateway,
        tool_agent=tool_agent,
        executor=executor,
        run_queue=run_queue,
        connectors=connectors,
        heartbeat=heartbeat,
        task_store=task_store,
        tasks=tasks,
    )
