"""Queue of agents waiting for a room, persisted through the gateway."""

from __future__ import annotations

import logging

from .gateway import PersistenceGateway
from .models import QueueEntry


logger = logging.getLogger("deceit_core.matching_queue")


class MatchingQueue:
    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    def enqueue(self, agent_id: str, score: float, is_synthetic: bool = False) -> QueueEntry:
        # Re-enqueue replaces the prior entry, refreshing score and timestamp.
        self._gateway.delete_matching_entry(str(agent_id))
        entry = self._gateway.insert_matching_entry(str(agent_id), float(score), bool(is_synthetic))
        logger.debug("[QUEUE] Enqueued %s (score=%.1f synthetic=%s)", agent_id, float(score), is_synthetic)
        return entry

    def dequeue(self, agent_id: str) -> bool:
        removed = self._gateway.delete_matching_entry(str(agent_id))
        if removed:
            logger.debug("[QUEUE] Dequeued %s", agent_id)
        return removed

    def list_all(self) -> list[QueueEntry]:
        return list(self._gateway.list_matching_entries())

    def contains(self, agent_id: str) -> bool:
        aid = str(agent_id)
        return any(entry.agent_id == aid for entry in self.list_all())

    def size(self) -> int:
        return len(self.list_all())
