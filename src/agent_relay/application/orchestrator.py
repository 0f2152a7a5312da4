"""The one object that owns the execution core.

Built by ``infrastructure.orchestrator_factory.build_orchestrator`` and handed
to the interfaces (HTTP API, CLI).  ``start`` brings up connectors, the
heartbeat and queued tasks; ``shutdown`` stops new work, cancels what is in
flight and stops every connector.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from agent_relay.config import RelayConfig
from agent_relay.domain import Agent, Connector, Session, Skill, Task

from .connector_manager import ConnectorManager
from .heartbeat import HeartbeatService
from .ports import ChatGateway, ProviderCatalog, Repository, ToolAgent
from .run_queue import RunQueue
from .task_queue import TaskQueue
from .turn_executor import TurnExecutor

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    config: RelayConfig
    sessions: Repository[Session]
    agents: Repository[Agent]
    skills: Repository[Skill]
    connector_store: Repository[Connector]
    vault: Any
    catalog: ProviderCatalog
    gateway: ChatGateway
    tool_agent: ToolAgent
    executor: TurnExecutor
    run_queue: RunQueue
    connectors: ConnectorManager
    heartbeat: HeartbeatService
    task_store: Repository[Task]
    tasks: TaskQueue

    async def start(self) -> None:
        if self.config.connectors.auto_start:
            started = await self.connectors.auto_start()
            logger.info("Auto-started %d connector(s)", started)
        if self.config.heartbeat.enabled:
            self.heartbeat.start()
        self.tasks.resume()

    async def shutdown(self) -> None:
        await self.heartbeat.stop()
        await self.tasks.shutdown()
        await self.run_queue.shutdown()
        await self.connectors.stop_all()
        logger.info("Orchestrator shut down")
