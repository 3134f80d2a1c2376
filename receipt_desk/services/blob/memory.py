"""In-memory blob store for tests and local runs."""

from typing import Optional

from receipt_desk.services.blob.interface import BlobStore


class InMemoryBlobStore(BlobStore):
    """Keeps uploaded bytes in a dict; URLs use the memory:// scheme."""

    def __init__(self):
        self.files: dict[str, tuple[bytes, str]] = {}

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        self.files[path] = (bytes(data), content_type)
        return f"memory://{path}"

    async def delete(self, path: str) -> None:
        self.files.pop(path, None)

    def read(self, path: str) -> Optional[bytes]:
        entry = self.files.get(path)
        return entry[0] if entry else None
