from __future__ import annotations

from typing import Iterator, Protocol, runtime_checkable

from ..core.errors import ConsultationError
from ..core.logging import get_logger
from ..schemas.consultation import (
    ConsultationOutcome,
    ProjectContext,
    Recommendation,
    Tier,
    WorkItem,
)

logger = get_logger(name=__name__)

DIRECT_HANDLER_ID = "direct"


@runtime_checkable
class Consultant(Protocol):
    consultant_id: str
    tier: Tier
    domain: str

    async def consult(self, item: WorkItem, context: ProjectContext) -> ConsultationOutcome:
        ...


class DirectConsultant:
    """Pass-through handler for DIRECT work and for the last-resort fallback."""

    consultant_id = DIRECT_HANDLER_ID
    tier = Tier.DIRECT
    domain = "general"

    async def consult(self, item: WorkItem, context: ProjectContext) -> ConsultationOutcome:
        content = {
            "approach": "direct-implementation",
            "description": item.description,
            "requirements": list(item.requirements),
            "constraints": list(item.constraints),
            "context_version": context.version,
        }
        return ConsultationOutcome(recommendation=Recommendation(content=content, score=1.0))


class ConsultantRegistry:
    """Explicit id -> consultant mapping resolved at startup."""

    def __init__(self, *, direct_handler: Consultant | None = None) -> None:
        self._consultants: dict[str, Consultant] = {}
        self._direct: Consultant = direct_handler or DirectConsultant()

    def register(self, consultant: Consultant, *, replace: bool = False) -> None:
        key = consultant.consultant_id
        if not key:
            raise ValueError("Consultant id must be a non-empty string")
        if key in self._consultants and not replace:
            raise ValueError(f"Consultant '{key}' is already registered")
        self._consultants[key] = consultant
        logger.debug("consultant_registered", consultant=key, tier=consultant.tier.value)

    def unregister(self, consultant_id: str) -> None:
        self._consultants.pop(consultant_id, None)

    def get(self, consultant_id: str) -> Consultant | None:
        return self._consultants.get(consultant_id)

    def resolve(self, consultant_id: str | None) -> Consultant:
        if consultant_id is None:
            return self._direct
        consultant = self._consultants.get(consultant_id)
        if consultant is None:
            raise ConsultationError(
                f"Consultant '{consultant_id}' is not available",
                details={"consultant_id": consultant_id},
            )
        return consultant

    @property
    def direct_handler(self) -> Consultant:
        return self._direct

    def ids(self) -> list[str]:
        return sorted(self._consultants)

    def __contains__(self, consultant_id: object) -> bool:
        return consultant_id in self._consultants

    def __iter__(self) -> Iterator[Consultant]:
        return iter(self._consultants.values())

    def __len__(self) -> int:
        return len(self._consultants)


__all__ = ["Consultant", "DirectConsultant", "ConsultantRegistry", "DIRECT_HANDLER_ID"]
