import uuid

import pytest
from sqlalchemy import func, select

from conftest import used_bytes
from foldly.core.actor import Actor
from foldly.core.errors import (
    CircularReference,
    DepthLimitExceeded,
    InvalidInput,
    NotFound,
    StorageUnavailable,
    Unauthorized,
)
from foldly.models.file import File
from foldly.models.folder import Folder
from foldly.services.hierarchy import FolderTree, resolve_unique_name

GUEST = Actor.user("user_guest", "guest@example.com")


async def make_chain(folders, owner, length, prefix="L", parent_id=None):
    chain = []
    for i in range(length):
        folder = await folders.create_folder(owner, f"{prefix}{i + 1}", parent_id)
        chain.append(folder)
        parent_id = folder.id
    return chain


async def count_rows(db, model, *criteria):
    result = await db.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


def test_resolve_unique_name():
    assert resolve_unique_name("Reports", set()) == "Reports"
    assert resolve_unique_name("Reports", {"reports"}) == "Reports (1)"
    assert resolve_unique_name("Reports", {"reports", "reports (1)"}) == "Reports (2)"
    assert resolve_unique_name("w2.pdf", {"w2.pdf"}, keep_extension=True) == "w2 (1).pdf"
    assert resolve_unique_name(".env", {".env"}, keep_extension=True) == ".env (1)"


async def test_create_root_and_nested(folders, owner, workspace):
    taxes = await folders.create_folder(owner, "Taxes")
    year = await folders.create_folder(owner, "2024", taxes.id)

    assert taxes.parent_folder_id is None
    assert taxes.workspace_id == workspace.id
    assert taxes.created_by_email == owner.email
    assert year.parent_folder_id == taxes.id
    assert await folders.folder_depth(taxes.id) == 1
    assert await folders.folder_depth(year.id) == 2

    breadcrumb = await folders.get_ancestors(year.id)
    assert [f.name for f in breadcrumb] == ["Taxes", "2024"]


async def test_create_rejects_bad_names(folders, owner, workspace):
    with pytest.raises(InvalidInput):
        await folders.create_folder(owner, "   ")
    with pytest.raises(InvalidInput):
        await folders.create_folder(owner, "a/b")
    with pytest.raises(InvalidInput):
        await folders.create_folder(owner, "x" * 256)


async def test_sibling_name_collision_gets_suffix(folders, owner, workspace):
    first = await folders.create_folder(owner, "Reports")
    second = await folders.create_folder(owner, "reports")
    third = await folders.create_folder(owner, "Reports")

    assert first.name == "Reports"
    assert second.name == "reports (1)"
    assert third.name == "Reports (2)"


async def test_depth_limit_on_create(folders, owner, workspace):
    chain = await make_chain(folders, owner, 20)
    assert await folders.folder_depth(chain[-1].id) == 20

    with pytest.raises(DepthLimitExceeded):
        await folders.create_folder(owner, "too deep", chain[-1].id)


async def test_move_into_own_descendant_is_rejected(db, folders, owner, workspace):
    taxes = await folders.create_folder(owner, "Taxes")
    year = await folders.create_folder(owner, "2024", taxes.id)

    with pytest.raises(CircularReference):
        await folders.move_folder(owner, taxes.id, year.id)
    with pytest.raises(CircularReference):
        await folders.move_folder(owner, taxes.id, taxes.id)

    tree = await FolderTree.load(db, workspace.id)
    assert tree.get(taxes.id).parent_folder_id is None
    assert tree.get(year.id).parent_folder_id == taxes.id


async def test_move_to_current_parent_is_noop(folders, owner, workspace):
    parent = await folders.create_folder(owner, "Parent")
    child = await folders.create_folder(owner, "Child", parent.id)

    moved = await folders.move_folder(owner, child.id, parent.id)
    assert moved.parent_folder_id == parent.id
    assert moved.name == "Child"


async def test_move_resolves_name_collision(folders, owner, workspace):
    a = await folders.create_folder(owner, "A")
    b = await folders.create_folder(owner, "B")
    await folders.create_folder(owner, "Shared", a.id)
    other = await folders.create_folder(owner, "Shared", b.id)

    moved = await folders.move_folder(owner, other.id, a.id)
    assert moved.parent_folder_id == a.id
    assert moved.name == "Shared (1)"


async def test_move_respects_depth_of_whole_subtree(folders, owner, workspace):
    a_chain = await make_chain(folders, owner, 10, prefix="A")
    b_chain = await make_chain(folders, owner, 11, prefix="B")
    assert await folders.subtree_height(a_chain[0].id) == 10

    with pytest.raises(DepthLimitExceeded):
        await folders.move_folder(owner, a_chain[0].id, b_chain[10].id)

    moved = await folders.move_folder(owner, a_chain[0].id, b_chain[9].id)
    assert moved.parent_folder_id == b_chain[9].id
    assert await folders.folder_depth(a_chain[-1].id) == 20


async def test_move_to_missing_destination(folders, owner, workspace):
    folder = await folders.create_folder(owner, "Lonely")
    with pytest.raises(NotFound):
        await folders.move_folder(owner, folder.id, uuid.uuid4())


async def test_rename(folders, owner, workspace):
    await folders.create_folder(owner, "Invoices")
    folder = await folders.create_folder(owner, "Drafts")

    renamed = await folders.rename_folder(owner, folder.id, "Invoices")
    assert renamed.name == "Invoices (1)"

    same = await folders.rename_folder(owner, folder.id, "Invoices (1)")
    assert same.name == "Invoices (1)"


async def test_stranger_cannot_touch_private_folder(folders, owner, workspace):
    folder = await folders.create_folder(owner, "Private")

    with pytest.raises(Unauthorized):
        await folders.create_folder(GUEST, "Sneaky", folder.id)
    with pytest.raises(Unauthorized):
        await folders.rename_folder(GUEST, folder.id, "Mine now")
    with pytest.raises(Unauthorized):
        await folders.delete_folder(GUEST, folder.id)


async def test_cascade_delete(db, storage, folders, files, links, owner, workspace):
    root = await folders.create_folder(owner, "Clients")
    subs = [await folders.create_folder(owner, f"Client {i}", root.id) for i in range(3)]
    link = await links.generate_link(owner, root.id)

    uploaded = []
    for i in range(10):
        target = subs[i % 3] if i < 9 else root
        result = await files.upload_file(owner, b"x" * 100, f"doc{i}.txt", folder_id=target.id)
        uploaded.append((result.file.id, result.file.storage_key))
    assert await used_bytes(db, workspace.id) == 1000

    report = await folders.delete_folder(owner, root.id)

    assert len(report.folder_ids) == 4
    assert len(report.file_ids) == 10
    assert report.freed_bytes == 1000
    assert report.deactivated_link_ids == [link.id]

    assert await count_rows(db, Folder, Folder.workspace_id == workspace.id) == 0
    assert await count_rows(db, File, File.workspace_id == workspace.id) == 0
    assert all(not storage.exists(key) for _, key in uploaded)
    assert await used_bytes(db, workspace.id) == 0
    assert link.is_active is False
    assert link.folder_id is None


async def test_cascade_delete_stops_when_storage_fails(db, storage, folders, files, owner, workspace):
    root = await folders.create_folder(owner, "Archive")
    sub = await folders.create_folder(owner, "Old", root.id)
    kept = await files.upload_file(owner, b"a" * 10, "keep.txt", folder_id=sub.id)
    gone = await files.upload_file(owner, b"b" * 20, "gone.txt", folder_id=root.id)
    storage.failing_deletes.add(kept.file.storage_key)

    with pytest.raises(StorageUnavailable) as exc_info:
        await folders.delete_folder(owner, root.id)

    details = exc_info.value.details
    assert [f["file_id"] for f in details["failed"]] == [str(kept.file.id)]
    assert details["deleted_file_ids"] == [str(gone.file.id)]

    assert await count_rows(db, Folder, Folder.workspace_id == workspace.id) == 2
    assert await count_rows(db, File, File.workspace_id == workspace.id) == 1
    assert storage.exists(kept.file.storage_key)
    assert await used_bytes(db, workspace.id) == 10

    # Retry once storage recovers
    storage.failing_deletes.clear()
    report = await folders.delete_folder(owner, root.id)
    assert report.freed_bytes == 10
    assert await count_rows(db, Folder, Folder.workspace_id == workspace.id) == 0
    assert await used_bytes(db, workspace.id) == 0


class TestSharedFolderManagement:
    """Non-owners working inside a public link"""

    @pytest.fixture
    async def shared(self, folders, links, owner, workspace):
        root = await folders.create_folder(owner, "Collected")
        await links.generate_link(owner, root.id)
        return root

    async def test_uploader_creates_and_deletes_own_subfolder(self, db, folders, shared):
        mine = await folders.create_folder(GUEST, "Guest stuff", shared.id)
        assert mine.created_by_email == GUEST.email

        report = await folders.delete_folder(GUEST, mine.id)
        assert report.folder_ids == [mine.id]

    async def test_uploader_cannot_manage_others_folders(self, folders, owner, shared):
        owners = await folders.create_folder(owner, "Owner stuff", shared.id)
        with pytest.raises(Unauthorized):
            await folders.rename_folder(GUEST, owners.id, "Taken")
        with pytest.raises(Unauthorized):
            await folders.delete_folder(GUEST, owners.id)

    async def test_link_folder_is_owner_managed(self, folders, shared):
        with pytest.raises(Unauthorized):
            await folders.rename_folder(GUEST, shared.id, "Renamed")
        with pytest.raises(Unauthorized):
            await folders.delete_folder(GUEST, shared.id)

    async def test_anonymous_cannot_manage_even_with_claimed_email(self, folders, shared):
        claimed = Actor.anonymous(GUEST.email)
        mine = await folders.create_folder(claimed, "Drop box", shared.id)
        with pytest.raises(Unauthorized):
            await folders.delete_folder(claimed, mine.id)

    async def test_uploader_cannot_move_out_of_shared_folder(self, folders, owner, shared):
        outside = await folders.create_folder(owner, "Outside")
        mine = await folders.create_folder(GUEST, "Mine", shared.id)
        with pytest.raises(Unauthorized):
            await folders.move_folder(GUEST, mine.id, outside.id)
        with pytest.raises(Unauthorized):
            await folders.move_folder(GUEST, mine.id, None)
