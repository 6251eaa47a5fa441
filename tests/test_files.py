import uuid

import pytest
from sqlalchemy import func, select

from conftest import used_bytes
from foldly.core.actor import Actor
from foldly.core.errors import (
    InvalidInput,
    NotAuthorized,
    StorageUnavailable,
    Unauthorized,
)
from foldly.models.file import File

CLIENT = "client@example.com"


async def file_count(db, workspace_id):
    result = await db.execute(select(func.count()).select_from(File).where(File.workspace_id == workspace_id))
    return result.scalar_one()


async def test_owner_upload_into_folder(db, storage, folders, files, owner, workspace):
    folder = await folders.create_folder(owner, "Photos")
    result = await files.upload_file(owner, b"\x89PNG....", "cat.png", folder_id=folder.id)

    assert result.file.folder_id == folder.id
    assert result.file.mime_type == "image/png"
    assert result.file.uploader_email == owner.email
    assert result.quota.used_bytes == 0
    assert result.quota.projected_bytes == 8
    assert storage.get(result.file.storage_key) == b"\x89PNG...."
    assert await used_bytes(db, workspace.id) == 8


async def test_duplicate_filename_is_suffixed(folders, files, owner, workspace):
    folder = await folders.create_folder(owner, "Docs")
    first = await files.upload_file(owner, b"a", "report.pdf", folder_id=folder.id)
    second = await files.upload_file(owner, b"b", "Report.pdf", folder_id=folder.id)

    assert first.file.filename == "report.pdf"
    assert second.file.filename == "Report (1).pdf"
    assert second.file.original_filename == "Report.pdf"


async def test_storage_failure_on_upload_leaves_nothing(db, storage, folders, files, owner, workspace):
    folder = await folders.create_folder(owner, "Photos")
    workspace_id, folder_id = workspace.id, folder.id
    storage.fail_puts = True

    with pytest.raises(StorageUnavailable):
        await files.upload_file(owner, b"x" * 64, "cat.png", folder_id=folder_id)

    assert await file_count(db, workspace_id) == 0
    assert await used_bytes(db, workspace_id) == 0


async def test_taxes_scenario(db, folders, links, files, permissions, owner, workspace):
    taxes = await folders.create_folder(owner, "Taxes")
    link = await links.generate_link(owner, taxes.id, "dedicated")
    await permissions.add_permission(owner, link.id, CLIENT)
    client = Actor.anonymous(CLIENT)

    w2 = await files.upload_file(client, b"w" * 500 * 1024, "w2.pdf", link_slug=link.slug)
    assert await used_bytes(db, workspace.id) == 500 * 1024

    await permissions.remove_permission(owner, link.id, CLIENT)
    with pytest.raises(NotAuthorized):
        await files.upload_file(client, b"1099" * 10, "1099.pdf", link_slug=link.slug)
    assert await used_bytes(db, workspace.id) == 500 * 1024

    listed = await files.list_files(workspace.id, taxes.id)
    assert [(f.id, f.filename, f.uploader_email) for f in listed] == [(w2.file.id, "w2.pdf", CLIENT)]


async def test_move_keeps_attribution_and_quota(db, folders, links, files, owner, workspace):
    inbox = await folders.create_folder(owner, "Inbox")
    sorted_ = await folders.create_folder(owner, "Sorted")
    link = await links.generate_link(owner, inbox.id)
    uploaded = await files.upload_file(Actor.anonymous(CLIENT), b"d" * 42, "doc.txt", link_slug=link.slug,
                                       uploader_name="Client")

    moved = await files.move_file(owner, uploaded.file.id, sorted_.id)

    assert moved.folder_id == sorted_.id
    assert moved.uploader_email == CLIENT
    assert moved.uploader_name == "Client"
    assert moved.link_id == link.id
    assert await used_bytes(db, workspace.id) == 42


async def test_move_to_same_folder_is_noop(folders, files, owner, workspace):
    folder = await folders.create_folder(owner, "Docs")
    uploaded = await files.upload_file(owner, b"a", "a.txt", folder_id=folder.id)

    moved = await files.move_file(owner, uploaded.file.id, folder.id)
    assert moved.filename == "a.txt"


async def test_rename_file(folders, files, owner, workspace):
    folder = await folders.create_folder(owner, "Docs")
    await files.upload_file(owner, b"a", "final.txt", folder_id=folder.id)
    draft = await files.upload_file(owner, b"b", "draft.txt", folder_id=folder.id)

    renamed = await files.rename_file(owner, draft.file.id, "final.txt")
    assert renamed.filename == "final (1).txt"

    with pytest.raises(InvalidInput):
        await files.rename_file(owner, draft.file.id, "")


async def test_delete_file_frees_quota(db, storage, folders, files, owner, workspace):
    folder = await folders.create_folder(owner, "Docs")
    uploaded = await files.upload_file(owner, b"z" * 30, "z.txt", folder_id=folder.id)
    key = uploaded.file.storage_key

    freed = await files.delete_file(owner, uploaded.file.id)

    assert freed == 30
    assert not storage.exists(key)
    assert await file_count(db, workspace.id) == 0
    assert await used_bytes(db, workspace.id) == 0


async def test_bulk_delete_reports_per_item(db, storage, folders, files, owner, workspace):
    folder = await folders.create_folder(owner, "Docs")
    a = await files.upload_file(owner, b"a" * 10, "a.txt", folder_id=folder.id)
    b = await files.upload_file(owner, b"b" * 20, "b.txt", folder_id=folder.id)
    c = await files.upload_file(owner, b"c" * 40, "c.txt", folder_id=folder.id)
    storage.failing_deletes.add(b.file.storage_key)
    missing = uuid.uuid4()

    report = await files.bulk_delete(owner, [a.file.id, b.file.id, c.file.id, missing])

    assert sorted(report.deleted) == sorted([a.file.id, c.file.id])
    assert report.freed_bytes == 50
    failed = {f["file_id"]: f["error"] for f in report.failed}
    assert failed == {str(b.file.id): "StorageUnavailable", str(missing): "NotFound"}

    assert await file_count(db, workspace.id) == 1
    assert storage.exists(b.file.storage_key)
    assert await used_bytes(db, workspace.id) == 20


class TestUploaderOwnership:
    @pytest.fixture
    async def link(self, folders, links, owner, workspace):
        folder = await folders.create_folder(owner, "Shared")
        return await links.generate_link(owner, folder.id)

    async def test_verified_uploader_deletes_own_file(self, files, link):
        guest = Actor.user("user_client", CLIENT)
        uploaded = await files.upload_file(guest, b"mine", "mine.txt", link_slug=link.slug)
        assert await files.delete_file(guest, uploaded.file.id) == 4

    async def test_uploader_cannot_delete_others_file(self, files, owner, link):
        theirs = await files.upload_file(owner, b"owner", "owner.txt", folder_id=link.folder_id)
        guest = Actor.user("user_client", CLIENT)
        with pytest.raises(Unauthorized):
            await files.delete_file(guest, theirs.file.id)

    async def test_anonymous_cannot_delete(self, files, link):
        anon = Actor.anonymous(CLIENT)
        uploaded = await files.upload_file(anon, b"mine", "mine.txt", link_slug=link.slug)
        with pytest.raises(Unauthorized):
            await files.delete_file(anon, uploaded.file.id)

    async def test_upload_outside_link_folder_is_rejected(self, folders, files, owner, link):
        elsewhere = await folders.create_folder(owner, "Elsewhere")
        with pytest.raises(Unauthorized):
            await files.upload_file(Actor.anonymous(CLIENT), b"x", "x.txt",
                                    folder_id=elsewhere.id, link_slug=link.slug)

    async def test_signed_url_requires_read(self, files, owner, link):
        uploaded = await files.upload_file(owner, b"owner", "owner.txt", folder_id=link.folder_id)
        url = await files.signed_url(owner, uploaded.file.id)
        assert "/files/download/proxy?key=" in url
        with pytest.raises(Unauthorized):
            await files.signed_url(Actor.anonymous(CLIENT), uploaded.file.id)


async def test_search_files(folders, files, owner, workspace):
    folder = await folders.create_folder(owner, "Docs")
    await files.upload_file(owner, b"a", "Invoice-March.pdf", folder_id=folder.id)
    await files.upload_file(owner, b"b", "notes.txt", folder_id=folder.id)

    hits = await files.search_files(workspace.id, "invoice")
    assert [f.filename for f in hits] == ["Invoice-March.pdf"]
    by_uploader = await files.search_files(workspace.id, "owner@")
    assert len(by_uploader) == 2

    with pytest.raises(InvalidInput):
        await files.search_files(workspace.id, "  ")
