"""Async Supabase implementation of ProfileRepository."""

from typing import Optional

from supabase import AsyncClient

from application.models.generation import UserProfile


class AsyncSupabaseProfileRepository:
    """Reads ``user_profiles`` rows for the Generator."""

    TABLE = "user_profiles"

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        result = await (
            self._client.table(self.TABLE)
            .select("*")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return UserProfile.model_validate(result.data[0])
