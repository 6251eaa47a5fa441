"""In-memory view of one workspace's folder forest.

Folders are parent-pointer rows; ``FolderTree`` indexes them by id so cycle,
depth and subtree questions are answered by explicit walks over persisted
state rather than anything a client sends.
"""
from collections import defaultdict, deque
import os
import uuid
from typing import Iterable, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.core.errors import CircularReference, NameConflict, NotFound
from foldly.models.folder import Folder

MAX_NAME_SUFFIX = 10_000


class FolderTree:
    def __init__(self, folders: Iterable[Folder]):
        self.by_id: dict[uuid.UUID, Folder] = {}
        self.children: dict[Optional[uuid.UUID], list[Folder]] = defaultdict(list)
        for folder in folders:
            self.by_id[folder.id] = folder
            self.children[folder.parent_folder_id].append(folder)

    @classmethod
    async def load(cls, db: AsyncSession, workspace_id: uuid.UUID) -> "FolderTree":
        result = await db.execute(select(Folder).where(Folder.workspace_id == workspace_id))
        return cls(result.scalars().all())

    def __contains__(self, folder_id) -> bool:
        return folder_id in self.by_id

    def get(self, folder_id: uuid.UUID) -> Folder:
        folder = self.by_id.get(folder_id)
        if folder is None:
            raise NotFound("Folder not found", {"folder_id": str(folder_id)})
        return folder

    def ancestors(self, folder_id: uuid.UUID) -> list[Folder]:
        """Folder itself first, then its parents up to the root."""
        chain = []
        seen = set()
        current = self.get(folder_id)
        while current is not None:
            if current.id in seen:
                # Persisted state already contains a cycle
                raise CircularReference("Folder hierarchy contains a cycle", {"folder_id": str(current.id)})
            seen.add(current.id)
            chain.append(current)
            current = self.by_id.get(current.parent_folder_id) if current.parent_folder_id else None
        return chain

    def breadcrumb(self, folder_id: uuid.UUID) -> list[Folder]:
        return list(reversed(self.ancestors(folder_id)))

    def depth(self, folder_id: Optional[uuid.UUID]) -> int:
        """Roots sit at depth 1; the workspace root (None) is depth 0."""
        if folder_id is None:
            return 0
        return len(self.ancestors(folder_id))

    def descendants(self, folder_id: uuid.UUID) -> list[Folder]:
        """Breadth-first subtree, starting with the folder itself."""
        root = self.get(folder_id)
        ordered = []
        seen = set()
        queue = deque([root])
        while queue:
            folder = queue.popleft()
            if folder.id in seen:
                continue
            seen.add(folder.id)
            ordered.append(folder)
            queue.extend(self.children.get(folder.id, []))
        return ordered

    def height(self, folder_id: uuid.UUID) -> int:
        """Levels in the subtree rooted at folder_id (a leaf has height 1)."""
        levels = {folder_id: 1}
        best = 1
        for folder in self.descendants(folder_id):
            level = levels[folder.id]
            best = max(best, level)
            for child in self.children.get(folder.id, []):
                levels[child.id] = level + 1
        return best

    def is_within(self, folder_id: Optional[uuid.UUID], ancestor_id: uuid.UUID) -> bool:
        if folder_id is None:
            return False
        return any(f.id == ancestor_id for f in self.ancestors(folder_id))

    def nearest_linked(self, folder_id: Optional[uuid.UUID]) -> Optional[Folder]:
        """Closest folder at or above folder_id that has a bound link."""
        if folder_id is None:
            return None
        for folder in self.ancestors(folder_id):
            if folder.link_id is not None:
                return folder
        return None

    def sibling_names(self, parent_id: Optional[uuid.UUID], exclude_id: Optional[uuid.UUID] = None) -> set[str]:
        return {
            f.name.lower()
            for f in self.children.get(parent_id, [])
            if f.id != exclude_id
        }

    def reparent(self, folder: Folder, new_parent_id: Optional[uuid.UUID]):
        siblings = self.children.get(folder.parent_folder_id, [])
        if folder in siblings:
            siblings.remove(folder)
        folder.parent_folder_id = new_parent_id
        self.children[new_parent_id].append(folder)

    def add(self, folder: Folder):
        self.by_id[folder.id] = folder
        self.children[folder.parent_folder_id].append(folder)


def resolve_unique_name(name: str, taken: set[str], keep_extension: bool = False) -> str:
    """Windows-style conflict resolution: name, name (1), name (2), ...

    ``taken`` holds lower-cased sibling names. With ``keep_extension`` the
    suffix goes before the extension ("w2 (1).pdf").
    """
    if name.lower() not in taken:
        return name
    stem, ext = os.path.splitext(name) if keep_extension else (name, "")
    if not stem:
        stem, ext = name, ""
    for n in range(1, MAX_NAME_SUFFIX + 1):
        candidate = f"{stem} ({n}){ext}"
        if candidate.lower() not in taken:
            return candidate
    raise NameConflict(f"Could not find a free name for '{name}'", {"name": name})
