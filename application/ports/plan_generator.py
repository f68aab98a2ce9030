"""Port interfaces for the plan Generator and the profile store it reads from."""

from typing import Optional, Protocol

from application.models.generation import GeneratedPlan, GenerationContext, UserProfile


class ProfileRepository(Protocol):
    """Read access to user profiles."""

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        """Get the user's profile, or None if the user has not onboarded."""
        ...


class PlanGenerator(Protocol):
    """The slow, non-deterministic collaborator that produces a plan.

    May take 30-300 seconds. Raises ``GeneratorTransientError`` for failures
    worth retrying later and ``GeneratorFatalError`` otherwise.
    """

    async def generate(self, profile: UserProfile, context: GenerationContext) -> GeneratedPlan:
        """Generate and store a plan, returning its reference."""
        ...
