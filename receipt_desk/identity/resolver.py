"""
Identity Resolver

Maps an authenticated principal (as reported by the identity provider) to
the stored User profile that carries role and approval status.

Authentication itself happens elsewhere. By the time `sign_in` is called
the claims are trusted.

DESIGN DECISION: Profile fields the user customized (display name,
avatar) survive later sign-ins; the provider_* fields always mirror the
provider's latest values.
"""

from io import BytesIO
from pathlib import PurePosixPath
from typing import Optional

import structlog
from PIL import Image, UnidentifiedImageError

from receipt_desk.audit import AuditLogger
from receipt_desk.identity.whitelist import WhitelistGate
from receipt_desk.models.audit import AuditEventBuilder
from receipt_desk.models.receipt import ValidationIssue, utc_now
from receipt_desk.models.user import IdentityClaims, Role, User, UserStatus, normalize_email
from receipt_desk.services.blob import BlobStore, avatar_blob_path
from receipt_desk.services.storage import DocumentStore
from receipt_desk.services.storage import collections
from receipt_desk.validation import ReceiptValidator, ValidationError


logger = structlog.get_logger()

# Pillow format name -> file extension
_FORMAT_EXTENSIONS = {"JPEG": "jpg", "MPO": "jpg", "PNG": "png", "GIF": "gif", "WEBP": "webp"}


class UnknownPrincipalError(Exception):
    """No stored profile for this principal (they never signed in)."""
    pass


class IdentityResolver:
    """Creates, resolves and maintains user profiles."""

    def __init__(
        self,
        store: DocumentStore,
        whitelist: WhitelistGate,
        blob_store: Optional[BlobStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        validator: Optional[ReceiptValidator] = None,
    ):
        self._store = store
        self._whitelist = whitelist
        self._blobs = blob_store
        self._audit = audit_logger or AuditLogger()
        self._validator = validator or ReceiptValidator()

    async def sign_in(self, claims: IdentityClaims) -> User:
        """
        Create or refresh the profile for a signed-in principal.

        New users start as members, pending unless whitelisted. Existing
        pending users are approved if their email has been whitelisted
        since.
        """
        uid = claims.principal_id
        email_lower = normalize_email(claims.email)
        now = utc_now()

        existing_doc = await self._store.get(collections.USERS, uid)
        existing = User.from_document(uid, existing_doc) if existing_doc is not None else None

        status = await self._whitelist.decide_status(
            claims.email,
            existing.status if existing else None,
        )

        if existing is None:
            user = User(
                id=uid,
                email=claims.email,
                email_lower=email_lower,
                role=Role.MEMBER,
                status=status,
                display_name=claims.display_name,
                avatar_url=claims.avatar_url,
                provider_name=claims.display_name,
                provider_avatar_url=claims.avatar_url,
                created_at=now,
                last_login_at=now,
            )
            await self._store.set(collections.USERS, uid, user.to_document())
        else:
            fields = {
                "email": claims.email,
                "email_lower": email_lower,
                "provider_name": claims.display_name,
                "provider_avatar_url": claims.avatar_url,
                "last_login_at": now.isoformat(),
            }
            if not existing.display_name:
                fields["display_name"] = claims.display_name
            if not existing.avatar_url:
                fields["avatar_url"] = claims.avatar_url
            if status != existing.status:
                fields["status"] = status.value
            merged = await self._store.update(collections.USERS, uid, fields)
            user = User.from_document(uid, merged)

        await self._audit.log(AuditEventBuilder.user_signed_in(
            user_id=uid,
            email=email_lower,
            status=user.status.value,
            created=existing is None,
        ))
        if status == UserStatus.APPROVED and (existing is None or existing.status != status):
            await self._audit.log(AuditEventBuilder.user_auto_approved(uid, email_lower))

        return user

    async def resolve(self, principal_id: str) -> User:
        """
        Fresh read of a principal's profile.

        Raises:
            UnknownPrincipalError: If the principal has no profile
        """
        data = await self._store.get(collections.USERS, principal_id)
        if data is None:
            raise UnknownPrincipalError(f"Unknown user: {principal_id}")
        return User.from_document(principal_id, data)

    async def find(self, principal_id: str) -> Optional[User]:
        """Like `resolve`, but None for unknown principals."""
        data = await self._store.get(collections.USERS, principal_id)
        return User.from_document(principal_id, data) if data is not None else None

    async def update_profile(
        self,
        user_id: str,
        display_name: str,
        avatar_url: Optional[str] = None,
    ) -> User:
        """
        Change the user's own display name and, optionally, avatar URL.

        Raises:
            ValidationError: If the name is shorter than 2 characters
            UnknownPrincipalError: If the user does not exist
        """
        name = self._validator.validate_display_name(display_name)
        await self.resolve(user_id)

        fields = {"display_name": name, "profile_updated_at": utc_now().isoformat()}
        if avatar_url is not None:
            fields["avatar_url"] = avatar_url.strip()

        merged = await self._store.update(collections.USERS, user_id, fields)
        await self._audit.log(AuditEventBuilder.profile_updated(
            user_id, sorted(k for k in fields if k != "profile_updated_at")
        ))
        return User.from_document(user_id, merged)

    async def upload_avatar(self, user_id: str, filename: str, data: bytes) -> str:
        """
        Store a new avatar image and return its URL.

        The URL is not saved on the profile; pass it to `update_profile`.

        Raises:
            ValidationError: If the bytes are not a readable image
        """
        if self._blobs is None:
            raise RuntimeError("No blob store configured for avatar uploads")
        await self.resolve(user_id)

        image_format = self._verify_image(data)
        extension = PurePosixPath(filename or "").suffix.lower().lstrip(".")
        if not extension:
            extension = _FORMAT_EXTENSIONS.get(image_format, "jpg")

        path = avatar_blob_path(user_id, extension)
        content_type = Image.MIME.get(image_format, "application/octet-stream")
        url = await self._blobs.upload(path, data, content_type)
        logger.info("avatar_uploaded", user_id=user_id, path=path)
        return url

    @staticmethod
    def _verify_image(data: bytes) -> str:
        """Pillow format name of the image, or ValidationError."""
        try:
            with Image.open(BytesIO(data)) as img:
                image_format = img.format or ""
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise ValidationError([ValidationIssue(
                field="avatar",
                issue_type="invalid_format",
                message=f"Avatar must be an image file ({e})",
            )])
        return image_format
