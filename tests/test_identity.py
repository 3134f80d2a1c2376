"""Tests for sign-in, profiles and the whitelist."""

from io import BytesIO

import pytest
from PIL import Image

from receipt_desk.access import AuthorizationError
from receipt_desk.identity import UnknownPrincipalError
from receipt_desk.models.user import IdentityClaims, Role, UserStatus
from receipt_desk.services.storage import NotFoundError
from receipt_desk.services.storage import collections
from receipt_desk.validation import ValidationError

from conftest import MEMBER, OWNER, PENDING, STAFF, audit_types


def claims(principal_id: str = "new-1", email: str = "new@example.com", name: str = "Nora New"):
    return IdentityClaims(
        principal_id=principal_id,
        email=email,
        display_name=name,
        avatar_url="https://provider.example/avatar.png",
    )


def png_bytes() -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (4, 4), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


class TestSignIn:

    @pytest.mark.asyncio
    async def test_new_user_waits_for_approval(self, app, store):
        user = await app.identity.sign_in(claims())

        assert user.role == Role.MEMBER
        assert user.status == UserStatus.PENDING
        assert user.display_name == "Nora New"
        assert user.email_lower == "new@example.com"
        assert await store.get(collections.USERS, "new-1") is not None
        assert "user_created" in await audit_types(store)

    @pytest.mark.asyncio
    async def test_whitelisted_user_is_approved_at_once(self, app, store):
        await app.whitelist.add_entry(OWNER, "new@example.com")

        user = await app.identity.sign_in(claims(email="NEW@Example.com"))

        assert user.status == UserStatus.APPROVED
        assert "user_auto_approved" in await audit_types(store)

    @pytest.mark.asyncio
    async def test_pending_user_is_approved_once_whitelisted(self, app):
        await app.identity.sign_in(claims())
        await app.whitelist.add_entry(OWNER, "new@example.com")

        user = await app.identity.sign_in(claims())

        assert user.status == UserStatus.APPROVED

    @pytest.mark.asyncio
    async def test_denied_user_stays_denied(self, app, store):
        await app.whitelist.add_entry(OWNER, "new@example.com")
        await app.identity.sign_in(claims())
        await store.update(collections.USERS, "new-1", {"status": "denied"})

        user = await app.identity.sign_in(claims())

        assert user.status == UserStatus.DENIED

    @pytest.mark.asyncio
    async def test_customized_profile_survives_sign_in(self, app):
        await app.identity.sign_in(claims())
        await app.identity.update_profile("new-1", "Nora N.")

        user = await app.identity.sign_in(claims(name="Provider Name"))

        assert user.display_name == "Nora N."
        assert user.provider_name == "Provider Name"
        assert user.last_login_at is not None

    @pytest.mark.asyncio
    async def test_existing_role_is_kept(self, app):
        user = await app.identity.sign_in(claims(principal_id=STAFF, email="staff@example.com"))
        assert user.role == Role.STAFF


class TestResolve:

    @pytest.mark.asyncio
    async def test_resolve_known_user(self, app):
        user = await app.identity.resolve(MEMBER)
        assert user.display_name == "Mia Member"

    @pytest.mark.asyncio
    async def test_resolve_unknown_user(self, app):
        with pytest.raises(UnknownPrincipalError):
            await app.identity.resolve("ghost")
        assert await app.identity.find("ghost") is None


class TestProfile:

    @pytest.mark.asyncio
    async def test_update_display_name_and_avatar(self, app):
        user = await app.identity.update_profile(MEMBER, "  Mia M. ", avatar_url="memory://a.png")
        assert user.display_name == "Mia M."
        assert user.avatar_url == "memory://a.png"
        assert user.profile_updated_at is not None

    @pytest.mark.asyncio
    async def test_short_display_name_is_rejected(self, app, store):
        with pytest.raises(ValidationError):
            await app.identity.update_profile(MEMBER, "M")
        assert (await store.get(collections.USERS, MEMBER))["display_name"] == "Mia Member"

    @pytest.mark.asyncio
    async def test_unknown_user_cannot_update(self, app):
        with pytest.raises(UnknownPrincipalError):
            await app.identity.update_profile("ghost", "Ghost")

    @pytest.mark.asyncio
    async def test_avatar_upload(self, app, blobs):
        url = await app.identity.upload_avatar(MEMBER, "me.PNG", png_bytes())

        assert url == f"memory://profile/{MEMBER}/avatar.png"
        assert blobs.files[f"profile/{MEMBER}/avatar.png"][1] == "image/png"

    @pytest.mark.asyncio
    async def test_avatar_extension_from_image_format(self, app, blobs):
        await app.identity.upload_avatar(MEMBER, "avatar", png_bytes())
        assert f"profile/{MEMBER}/avatar.png" in blobs.files

    @pytest.mark.asyncio
    async def test_avatar_must_be_an_image(self, app, blobs):
        with pytest.raises(ValidationError):
            await app.identity.upload_avatar(MEMBER, "notes.png", b"definitely not a png")
        assert blobs.files == {}


class TestWhitelist:

    @pytest.mark.asyncio
    async def test_owner_manages_entries(self, app):
        await app.whitelist.add_entry(OWNER, " B@Example.com ", note="new hire")
        await app.whitelist.add_entry(OWNER, "a@example.com")

        entries = await app.whitelist.list_entries(OWNER)

        assert [e.email for e in entries] == ["a@example.com", "b@example.com"]
        assert entries[1].note == "new hire"
        assert entries[1].created_by == OWNER

    @pytest.mark.asyncio
    async def test_remove_entry(self, app):
        await app.whitelist.add_entry(OWNER, "a@example.com")
        await app.whitelist.remove_entry(OWNER, "A@example.com")

        assert not await app.whitelist.is_whitelisted("a@example.com")
        with pytest.raises(NotFoundError):
            await app.whitelist.remove_entry(OWNER, "a@example.com")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [STAFF, MEMBER, PENDING])
    async def test_only_owner_may_manage(self, app, store, actor):
        with pytest.raises(AuthorizationError):
            await app.whitelist.add_entry(actor, "a@example.com")
        assert await store.query(collections.WHITELIST) == {}
        assert "access_denied" in await audit_types(store)

    @pytest.mark.asyncio
    async def test_invalid_email_is_rejected(self, app):
        with pytest.raises(ValidationError):
            await app.whitelist.add_entry(OWNER, "nobody")

    @pytest.mark.asyncio
    async def test_decide_status(self, app):
        await app.whitelist.add_entry(OWNER, "a@example.com")

        assert await app.whitelist.decide_status("a@example.com") == UserStatus.APPROVED
        assert await app.whitelist.decide_status("b@example.com") == UserStatus.PENDING
        assert await app.whitelist.decide_status(
            "a@example.com", UserStatus.DENIED
        ) == UserStatus.DENIED
        assert await app.whitelist.decide_status(None) == UserStatus.PENDING
