import pytest

from foldly.core.actor import Actor
from foldly.services.attribution import AttributionIndex

ALICE = "alice@example.com"
BOB = "bob@example.com"


@pytest.fixture
def index(db):
    return AttributionIndex(db)


@pytest.fixture
async def tree(folders, links, files, owner, workspace):
    """Clients (linked) > 2024 > Q1, plus a private Notes folder."""
    clients = await folders.create_folder(owner, "Clients")
    year = await folders.create_folder(owner, "2024", clients.id)
    q1 = await folders.create_folder(owner, "Q1", year.id)
    notes = await folders.create_folder(owner, "Notes")
    link = await links.generate_link(owner, clients.id)

    alice, bob = Actor.anonymous(ALICE), Actor.anonymous(BOB)
    await files.upload_file(alice, b"a" * 10, "a1.txt", link_slug=link.slug)
    await files.upload_file(alice, b"a" * 20, "a2.txt", folder_id=year.id, link_slug=link.slug)
    await files.upload_file(alice, b"a" * 30, "a3.txt", folder_id=q1.id, link_slug=link.slug)
    await files.upload_file(bob, b"b" * 5, "b1.txt", link_slug=link.slug)
    await files.upload_file(owner, b"o" * 7, "todo.txt", folder_id=notes.id)
    return {"clients": clients, "year": year, "q1": q1, "notes": notes, "link": link}


async def test_files_by_email_across_workspace(index, workspace, tree):
    names = sorted(f.filename for f in await index.files_by_email(workspace.id, "Alice@Example.com"))
    assert names == ["a1.txt", "a2.txt", "a3.txt"]


async def test_files_by_email_scoped_to_folder(index, workspace, tree):
    direct = await index.files_by_email(workspace.id, ALICE, folder_id=tree["year"].id)
    assert [f.filename for f in direct] == ["a2.txt"]

    nested = await index.files_by_email(workspace.id, ALICE, folder_id=tree["year"].id,
                                        include_subfolders=True)
    assert sorted(f.filename for f in nested) == ["a2.txt", "a3.txt"]


async def test_unique_uploaders(index, tree):
    assert await index.unique_uploaders(tree["clients"].id) == [ALICE, BOB]
    assert await index.unique_uploaders(tree["q1"].id) == [ALICE]


async def test_workspace_uploaders(index, workspace, tree, owner):
    rows = {row["email"]: row for row in await index.workspace_uploaders(workspace.id)}
    assert set(rows) == {ALICE, BOB, owner.email}
    assert rows[ALICE]["file_count"] == 3
    assert rows[ALICE]["total_bytes"] == 60
    assert rows[BOB]["total_bytes"] == 5


async def test_folder_counts_follow_mutations(index, files, workspace, tree, owner):
    counts = await index.folder_counts(workspace.id)
    assert counts[None].folder_count == 2
    assert counts[tree["clients"].id].file_count == 2
    assert counts[tree["clients"].id].uploader_count == 2
    assert counts[tree["clients"].id].folder_count == 1
    assert counts[tree["q1"].id].total_bytes == 30

    q1_files = await files.list_files(workspace.id, tree["q1"].id)
    await files.move_file(owner, q1_files[0].id, tree["notes"].id)

    counts = await index.folder_counts(workspace.id)
    assert counts[tree["q1"].id].file_count == 0
    assert counts[tree["notes"].id].file_count == 2
    assert counts[tree["notes"].id].uploader_count == 2


async def test_attribution_survives_permission_removal(index, permissions, owner, workspace, tree):
    await permissions.remove_permission(owner, tree["link"].id, ALICE)
    assert len(await index.files_by_email(workspace.id, ALICE)) == 3
