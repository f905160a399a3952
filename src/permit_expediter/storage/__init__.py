"""Storage layer: data store and object storage protocols plus local backends.

Usage:
    from permit_expediter.storage import JsonFilePermitStore, FileObjectStorage

    store = JsonFilePermitStore(workspace_dir=Path("workspace"))
    job = await store.get("jobs", job_id)

    objects = FileObjectStorage(Path("workspace"), signing_secret="...")
    await objects.upload("permits", "t1/case/application_v1.html", data, "text/html")
"""

from .protocol import ObjectStorage, PermitStore
from .filesystem import JsonFilePermitStore
from .memory import InMemoryPermitStore
from .object_storage import FileObjectStorage

__all__ = [
    "ObjectStorage",
    "PermitStore",
    "JsonFilePermitStore",
    "InMemoryPermitStore",
    "FileObjectStorage",
]
