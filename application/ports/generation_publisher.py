"""Port interface for handing generation work to an out-of-process worker."""

from typing import Protocol

from application.models.generation import GenerationRequest


class GenerationPublisher(Protocol):
    """Publishes ``generation.requested`` events to an external execution channel.

    The publisher knows nothing about the worker beyond the channel: the
    worker reports back exclusively through the ledger.
    """

    async def publish(self, request: GenerationRequest) -> None:
        """Publish the work request. Raises if the channel rejected it."""
        ...
