from datetime import datetime, timedelta, timezone

import pytest

from foldly.core.actor import Actor
from foldly.core.errors import AlreadyLinked, InvalidInput, LinkInactive, Unauthorized
from foldly.services.hierarchy import FolderTree
from foldly.services.permissions import Role, is_link_live


@pytest.fixture
async def taxes(folders, owner, workspace):
    return await folders.create_folder(owner, "Taxes")


async def test_generate_link_binds_folder(links, owner, taxes):
    link = await links.generate_link(owner, taxes.id, "public")

    assert link.is_active
    assert link.folder_id == taxes.id
    assert link.title == "Taxes"
    assert link.slug
    assert taxes.link_id == link.id
    assert await links.resolve_slug(link.slug) is link


async def test_generate_link_twice_is_rejected(links, owner, taxes):
    await links.generate_link(owner, taxes.id)
    with pytest.raises(AlreadyLinked):
        await links.generate_link(owner, taxes.id)


async def test_generate_link_rejects_unknown_type(links, owner, taxes):
    with pytest.raises(InvalidInput):
        await links.generate_link(owner, taxes.id, "secret")


async def test_only_owner_can_share(links, taxes):
    with pytest.raises(Unauthorized):
        await links.generate_link(Actor.user("someone_else", "else@example.com"), taxes.id)


async def test_unlink_returns_folder_to_personal(links, owner, taxes):
    link = await links.generate_link(owner, taxes.id)

    unlinked = await links.unlink_folder(owner, taxes.id)
    assert unlinked is link
    assert taxes.link_id is None
    assert link.is_active is False

    assert await links.unlink_folder(owner, taxes.id) is None


async def test_relink_after_unlink_creates_new_link(links, owner, taxes):
    first = await links.generate_link(owner, taxes.id)
    await links.unlink_folder(owner, taxes.id)
    second = await links.generate_link(owner, taxes.id)

    assert second.id != first.id
    assert second.slug != first.slug
    assert taxes.link_id == second.id


async def test_reuse_inactive_link_on_other_folder(db, folders, links, permissions, owner, taxes):
    link = await links.generate_link(owner, taxes.id)
    await permissions.add_permission(owner, link.id, "client@example.com")
    await links.unlink_folder(owner, taxes.id)

    other = await folders.create_folder(owner, "Receipts")
    reused = await links.generate_link(owner, other.id, reuse_link_id=link.id)

    assert reused.id == link.id
    assert reused.is_active
    assert reused.folder_id == other.id
    assert other.link_id == link.id
    assert await permissions.get_permission(link.id, "client@example.com") is not None


async def test_reuse_active_link_is_rejected(folders, links, owner, taxes):
    link = await links.generate_link(owner, taxes.id)
    other = await folders.create_folder(owner, "Receipts")
    with pytest.raises(AlreadyLinked):
        await links.generate_link(owner, other.id, reuse_link_id=link.id)


async def test_switch_type_keeps_permissions(links, permissions, owner, taxes):
    link = await links.generate_link(owner, taxes.id, "public")
    await permissions.add_permission(owner, link.id, "a@example.com")
    await permissions.add_permission(owner, link.id, "b@example.com")

    switched = await links.switch_link_type(owner, link.id, "dedicated")
    assert switched.link_type == "dedicated"
    emails = sorted(p.email for p in await permissions.list_permissions(owner, link.id))
    assert emails == ["a@example.com", "b@example.com"]

    back = await links.switch_link_type(owner, link.id, "public")
    assert back.link_type == "public"
    assert len(await permissions.list_permissions(owner, link.id)) == 2


async def test_update_link_title_and_expiry(links, owner, taxes):
    link = await links.generate_link(owner, taxes.id)
    past = datetime.utcnow() - timedelta(minutes=1)

    updated = await links.update_link(owner, link.id, title="2024 returns", expires_at=past)
    assert updated.title == "2024 returns"
    assert not is_link_live(updated)

    cleared = await links.update_link(owner, link.id, clear_expiry=True)
    assert cleared.expires_at is None
    assert is_link_live(cleared)


async def test_aware_expiry_is_stored_as_naive_utc(links, files, owner, taxes):
    tomorrow = datetime.now(timezone(timedelta(hours=2))) + timedelta(days=1)
    link = await links.generate_link(owner, taxes.id, expires_at=tomorrow)
    slug = link.slug

    assert link.expires_at.tzinfo is None
    assert link.expires_at == tomorrow.astimezone(timezone.utc).replace(tzinfo=None)
    guest = Actor.anonymous("guest@example.com")
    await files.upload_file(guest, b"w2", "w2.pdf", link_slug=slug)

    an_hour_ago = datetime.now(timezone(timedelta(hours=-5))) - timedelta(hours=1)
    updated = await links.update_link(owner, link.id, expires_at=an_hour_ago)
    assert updated.expires_at.tzinfo is None
    assert not is_link_live(updated)
    with pytest.raises(LinkInactive):
        await files.upload_file(guest, b"late", "late.pdf", link_slug=slug)


async def test_upload_target_rules(folders, links, owner, taxes):
    link = await links.generate_link(owner, taxes.id)
    inside = await folders.create_folder(owner, "Q1", taxes.id)
    outside = await folders.create_folder(owner, "Elsewhere")
    guest = Actor.anonymous("guest@example.com")

    _, _, _, target = await links.upload_target(guest, link.slug)
    assert target == taxes.id
    _, _, _, target = await links.upload_target(guest, link.slug, inside.id)
    assert target == inside.id

    with pytest.raises(Unauthorized):
        await links.upload_target(guest, link.slug, outside.id)

    await links.unlink_folder(owner, taxes.id)
    with pytest.raises(LinkInactive):
        await links.upload_target(guest, link.slug)


async def test_list_links(links, owner, taxes, folders):
    await links.generate_link(owner, taxes.id)
    other = await folders.create_folder(owner, "Other")
    second = await links.generate_link(owner, other.id)
    await links.unlink_folder(owner, taxes.id)

    assert len(await links.list_links(owner)) == 2
    active = await links.list_links(owner, include_inactive=False)
    assert [link.id for link in active] == [second.id]


async def test_owner_role_is_derived(db, permissions, links, owner, workspace, taxes):
    await links.generate_link(owner, taxes.id)
    tree = await FolderTree.load(db, workspace.id)
    access = await permissions.resolve_access(owner, workspace, tree, taxes.id)
    assert access.role == Role.OWNER
    assert access.link_folder_id == taxes.id
