"""User records kept as one JSON list behind the document store."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from pydantic import ValidationError

from chathub.domain.models import UserModel
from chathub.logging import logger
from chathub.services.exceptions import DuplicateEmail, UserNotFound
from chathub.storage.document_store import LockedDocumentStore

T = TypeVar("T")

USERS_DOCUMENT = "users"


class UserRepository:
    """CRUD over the user list.

    Writes take the exclusive lock on the whole document and re-read it inside
    the locked section, so concurrent writers never lose each other's updates.
    ``find_*`` helpers read without a lock; use :meth:`update` whenever the read
    feeds a write.
    """

    def __init__(self, store: LockedDocumentStore, document: str = USERS_DOCUMENT) -> None:
        self.store = store
        self.document = document

    async def load_all(self) -> list[UserModel]:
        return await asyncio.to_thread(self.load_all_sync)

    async def find_by_id(self, user_id: str) -> UserModel | None:
        return await asyncio.to_thread(self.find_by_id_sync, user_id)

    async def find_by_email(self, email: str) -> UserModel | None:
        return await asyncio.to_thread(self.find_by_email_sync, email)

    async def get(self, user_id: str) -> UserModel:
        user = await self.find_by_id(user_id)
        if user is None:
            raise UserNotFound("User not found.")
        return user

    async def insert(self, user: UserModel) -> UserModel:
        return await asyncio.to_thread(self.insert_sync, user)

    async def save(self, user: UserModel) -> UserModel:
        return await asyncio.to_thread(self.save_sync, user)

    async def delete(self, user_id: str) -> None:
        await asyncio.to_thread(self.delete_sync, user_id)

    async def update(self, user_id: str, fn: Callable[[UserModel], T]) -> T:
        """Load, mutate and persist one user inside a single exclusive section.

        ``fn`` receives the freshly loaded user and may mutate it in place; its
        return value is passed back. If ``fn`` raises, nothing is written.
        """

        return await asyncio.to_thread(self.update_sync, user_id, fn)

    # Synchronous core ---------------------------------------------------------

    def load_all_sync(self) -> list[UserModel]:
        records = self.store.read_unlocked(self.document, default=[])
        users: list[UserModel] = []
        for record in records:
            user = _parse(record)
            if user is not None:
                users.append(user)
        return users

    def find_by_id_sync(self, user_id: str) -> UserModel | None:
        records = self.store.read_unlocked(self.document, default=[])
        return _parse(_find_record(records, "id", user_id))

    def find_by_email_sync(self, email: str) -> UserModel | None:
        records = self.store.read_unlocked(self.document, default=[])
        return _parse(_find_record(records, "email", email))

    def insert_sync(self, user: UserModel) -> UserModel:
        with self.store.exclusive(self.document, default=[]) as handle:
            records: list[dict[str, Any]] = handle.data
            if _find_record(records, "email", user.email) is not None:
                raise DuplicateEmail("Email already registered.")
            if _find_record(records, "id", user.id) is not None:
                raise DuplicateEmail("User id already exists.")
            records.append(user.to_document())
        logger.info("user_inserted", user_id=user.id)
        return user

    def save_sync(self, user: UserModel) -> UserModel:
        payload = user.to_document()
        with self.store.exclusive(self.document, default=[]) as handle:
            records: list[dict[str, Any]] = handle.data
            index = _find_index(records, user.id)
            if index is None:
                records.append(payload)
            else:
                records[index] = payload
        return user

    def delete_sync(self, user_id: str) -> None:
        with self.store.exclusive(self.document, default=[]) as handle:
            records: list[dict[str, Any]] = handle.data
            index = _find_index(records, user_id)
            if index is None:
                raise UserNotFound("User not found.")
            del records[index]
        logger.info("user_deleted", user_id=user_id)

    def update_sync(self, user_id: str, fn: Callable[[UserModel], T]) -> T:
        with self.store.exclusive(self.document, default=[]) as handle:
            records: list[dict[str, Any]] = handle.data
            index = _find_index(records, user_id)
            if index is None:
                raise UserNotFound("User not found.")
            try:
                user = UserModel.model_validate(records[index])
            except ValidationError as exc:
                # Reads skip such records too; the stored record is left as is.
                logger.warning("user_record_invalid", user_id=user_id, error=str(exc))
                raise UserNotFound("User not found.") from exc
            result = fn(user)
            records[index] = user.to_document()
        return result


def _find_index(records: list[Any], user_id: str) -> int | None:
    for index, record in enumerate(records):
        if isinstance(record, dict) and record.get("id") == user_id:
            return index
    return None


def _find_record(records: list[Any], key: str, value: str) -> dict[str, Any] | None:
    for record in records:
        if isinstance(record, dict) and record.get(key) == value:
            return record
    return None


def _parse(record: dict[str, Any] | None) -> UserModel | None:
    if record is None:
        return None
    try:
        return UserModel.model_validate(record)
    except ValidationError as exc:
        logger.warning("user_record_invalid", user_id=record.get("id"), error=str(exc))
        return None


__all__ = ["USERS_DOCUMENT", "UserRepository"]
