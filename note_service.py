"""
Note Service - Note/folder CRUD with a cached note list.

The list endpoint is read far more often than notes change, so list
results are cached briefly. Any successful mutation clears the whole
cache: a cached read cannot know about a write, and a full clear keeps
invalidation trivially correct.
"""

import itertools
import logging
from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import UUID, uuid4

from cache import BoundedTTLCache
from exceptions import NoteNotFoundError
from models import Folder, FolderCreate, Note, NoteCreate, NoteUpdate
from sanitizer import sanitize

logger = logging.getLogger(__name__)

SortOrder = Literal["newest", "oldest"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clean_tags(tags: list[str]) -> list[str]:
    cleaned = (sanitize(tag).strip() for tag in tags)
    return [tag for tag in cleaned if tag]


class InMemoryNoteRepository:
    """Process-local note and folder storage."""

    def __init__(self) -> None:
        self._notes: dict[UUID, Note] = {}
        self._folders: dict[UUID, Folder] = {}
        # Insertion sequence breaks created_at ties.
        self._sequence: dict[UUID, int] = {}
        self._counter = itertools.count()

    async def list_notes(self, sort: SortOrder = "newest") -> list[Note]:
        return sorted(
            self._notes.values(),
            key=lambda note: (note.created_at, self._sequence[note.id]),
            reverse=(sort == "newest"),
        )

    async def get_note(self, note_id: UUID) -> Optional[Note]:
        return self._notes.get(note_id)

    async def add_note(self, title: str, content: str, tags: list[str], folder_id: Optional[UUID]) -> Note:
        now = _now()
        note = Note(
            id=uuid4(),
            title=title,
            content=content,
            tags=tags,
            folder_id=folder_id,
            created_at=now,
            updated_at=now,
        )
        self._notes[note.id] = note
        self._sequence[note.id] = next(self._counter)
        return note

    async def update_note(self, note_id: UUID, changes: dict) -> Note:
        note = self._notes.get(note_id)
        if note is None:
            raise NoteNotFoundError(f"Note {note_id} not found")
        updated = note.model_copy(update={**changes, "updated_at": _now()})
        self._notes[note_id] = updated
        return updated

    async def delete_note(self, note_id: UUID) -> bool:
        self._sequence.pop(note_id, None)
        return self._notes.pop(note_id, None) is not None

    async def list_folders(self) -> list[Folder]:
        return sorted(self._folders.values(), key=lambda folder: folder.created_at)

    async def add_folder(self, name: str) -> Folder:
        folder = Folder(id=uuid4(), name=name, created_at=_now())
        self._folders[folder.id] = folder
        return folder

    async def delete_folder(self, folder_id: UUID) -> bool:
        if self._folders.pop(folder_id, None) is None:
            return False
        # Notes outlive their folder.
        for note_id, note in list(self._notes.items()):
            if note.folder_id == folder_id:
                self._notes[note_id] = note.model_copy(update={"folder_id": None})
        return True


class NoteService:
    """Sanitizes input, caches list reads, invalidates on every mutation."""

    def __init__(
        self,
        repository: InMemoryNoteRepository,
        cache: Optional[BoundedTTLCache[list[Note]]] = None,
    ):
        self.repository = repository
        self.cache = cache if cache is not None else BoundedTTLCache(max_entries=16, default_ttl=30)

    def invalidate(self) -> None:
        """Drop every cached read."""
        self.cache.clear()
        logger.debug("Notes cache cleared")

    async def list_notes(self, sort: SortOrder = "newest") -> list[Note]:
        cached = self.cache.get(("notes", sort))
        if cached is not None:
            return list(cached)

        notes = await self.repository.list_notes(sort)
        self.cache.set(("notes", sort), notes)
        return list(notes)

    async def get_note(self, note_id: UUID) -> Note:
        note = await self.repository.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(f"Note {note_id} not found")
        return note

    async def create_note(self, payload: NoteCreate) -> Note:
        note = await self.repository.add_note(
            title=payload.title,
            content=sanitize(payload.content),
            tags=_clean_tags(payload.tags),
            folder_id=payload.folder_id,
        )
        self.invalidate()
        logger.info(f"Note created: {note.id}")
        return note

    async def update_note(self, note_id: UUID, payload: NoteUpdate) -> Note:
        changes = payload.model_dump(exclude_unset=True)
        # Only folder_id may be explicitly nulled.
        changes = {key: value for key, value in changes.items() if value is not None or key == "folder_id"}
        if "content" in changes:
            changes["content"] = sanitize(changes["content"])
        if "tags" in changes:
            changes["tags"] = _clean_tags(changes["tags"])

        note = await self.repository.update_note(note_id, changes)
        self.invalidate()
        return note

    async def delete_note(self, note_id: UUID) -> None:
        if not await self.repository.delete_note(note_id):
            raise NoteNotFoundError(f"Note {note_id} not found")
        self.invalidate()

    async def list_folders(self) -> list[Folder]:
        return await self.repository.list_folders()

    async def create_folder(self, payload: FolderCreate) -> Folder:
        folder = await self.repository.add_folder(payload.name)
        self.invalidate()
        return folder

    async def delete_folder(self, folder_id: UUID) -> None:
        await self.repository.delete_folder(folder_id)
        # Notes in the folder were detached, so cached lists are stale.
        self.invalidate()
