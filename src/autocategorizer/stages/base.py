import asyncio
from abc import ABC, abstractmethod

from autocategorizer.models import StageResult, Transaction


class Stage(ABC):
    name: str = "Stage"

    @abstractmethod
    async def process(
        self,
        transactions: list[Transaction],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> StageResult:
        """Resolve what this stage can; everything else comes back in ``remaining``."""
        pass
