from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..common import new_id, now_ms
from ..errors import AvatarNotFoundError
from ..models import StoredAvatar

if TYPE_CHECKING:
    from ..storage.base import SessionStore


class AvatarService:
    def __init__(self, store: "SessionStore") -> None:
        self.store = store

    async def create_avatar(
        self,
        *,
        character_id: str | None,
        status_label: str,
        image_url: str,
        metadata: dict[str, Any] | None = None,
    ) -> StoredAvatar:
        avatar = StoredAvatar(
            id=new_id(),
            character_id=character_id,
            status_label=status_label,
            image_url=image_url,
            metadata=metadata,
            created_at=now_ms(),
        )
        await self.store.create_avatar(avatar)
        return avatar

    async def list_avatars(self, character_id: str | None = None, include_global: bool = True) -> list[StoredAvatar]:
        return await self.store.list_avatars(character_id, include_global)

    async def get_avatar_or_raise(self, avatar_id: str) -> StoredAvatar:
        avatar = await self.store.get_avatar(avatar_id)
        if avatar is None:
            raise AvatarNotFoundError(f"Avatar {avatar_id} not found")
        return avatar

    async def find_latest_by_label(self, character_id: str, status_label: str) -> StoredAvatar | None:
        return await self.store.find_latest_avatar(character_id, status_label)

    async def find_latest(self, character_id: str) -> StoredAvatar | None:
        return await self.store.find_latest_avatar(character_id)
