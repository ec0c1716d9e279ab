"""
Upload destinations for file-like outputs.

The egress core does not bundle cloud SDKs. Host applications register an
``ObjectStore`` factory per destination kind (``s3``, ``gcp``, ``azure``,
``aliOSS``); outputs without an upload destination land on local disk
through ``LocalObjectStore``.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import aiofiles
import aiofiles.os

from egress_service.errors import ConfigurationError, FatalDeliveryError


logger = logging.getLogger(__name__)

COPY_BLOCK_SIZE = 1024 * 1024

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".ogg": "audio/ogg",
    ".webm": "video/webm",
    ".ts": "video/mp2t",
    ".m3u8": "application/x-mpegurl",
}


def content_type_for(key: str) -> str:
    return CONTENT_TYPES.get(Path(key).suffix.lower(), "application/octet-stream")


class ObjectStore(ABC):
    """A place finished files are uploaded to."""

    @abstractmethod
    async def upload(self, local_path: Path, key: str, content_type: str) -> str:
        """
        Upload a finished local file.

        Args:
            local_path: File to upload
            key: Destination object key
            content_type: MIME type of the object

        Returns:
            str: Location of the uploaded object

        Raises:
            DeliveryError: On transient failures (retried by the caller)
            FatalDeliveryError: On auth or permission failures
        """

    def local_path_for(self, key: str) -> Optional[Path]:
        """Final on-disk path for ``key`` if this store is the local disk."""
        return None


class LocalObjectStore(ObjectStore):
    """Keeps outputs on the local filesystem under ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def local_path_for(self, key: str) -> Optional[Path]:
        """
        Resolve ``key`` under the output directory.

        Raises:
            ConfigurationError: If the key is absolute or climbs out of ``root``
        """
        root = self.root.resolve()
        path = (root / key).resolve()
        if Path(key).is_absolute() or not path.is_relative_to(root):
            raise ConfigurationError(f"output path {key} is outside the output directory")
        return path

    async def upload(self, local_path: Path, key: str, content_type: str) -> str:
        destination = self.local_path_for(key)
        if Path(local_path).resolve() == destination:
            return str(destination)

        try:
            await aiofiles.os.makedirs(destination.parent, exist_ok=True)
            async with aiofiles.open(local_path, "rb") as src, aiofiles.open(destination, "wb") as dst:
                while True:
                    block = await src.read(COPY_BLOCK_SIZE)
                    if not block:
                        break
                    await dst.write(block)
        except OSError as e:
            raise FatalDeliveryError(f"cannot write {destination}: {e}")
        return str(destination)


async def discard_staged(path: Path, log: Any = logger) -> None:
    """Remove a staging file once it has been uploaded or abandoned."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        return
    except OSError as e:
        log.warning(f"Could not remove staged file {path}: {e}")
        return

    # Drop the per-egress staging directory once it is empty
    try:
        await aiofiles.os.rmdir(path.parent)
    except OSError:
        log.debug(f"Staging directory {path.parent} still in use")


ObjectStoreFactory = Callable[[Any], ObjectStore]


def _require(kind: str, upload: Any, *fields: str) -> None:
    missing = [name for name in fields if not getattr(upload, name)]
    if missing:
        raise ConfigurationError(f"{kind} upload is missing {', '.join(missing)}")


def validate_upload(kind: str, upload: Any) -> None:
    """
    Check an upload destination for required fields.

    Raises:
        ConfigurationError: If a required field is empty
    """
    if kind == "s3":
        _require(kind, upload, "bucket")
        # Both keys or neither (ambient credentials)
        if bool(upload.access_key) != bool(upload.secret):
            raise ConfigurationError("s3 upload needs both access_key and secret")
    elif kind == "gcp":
        _require(kind, upload, "bucket")
    elif kind == "azure":
        _require(kind, upload, "account_name", "account_key", "container_name")
    elif kind == "aliOSS":
        _require(kind, upload, "bucket", "access_key", "secret")
    else:
        raise ConfigurationError(f"unsupported upload destination: {kind}")


class StorageResolver:
    """Maps the upload oneof of a file output onto an ``ObjectStore``."""

    def __init__(self, output_directory: Path, factories: Optional[Dict[str, ObjectStoreFactory]] = None):
        self.local = LocalObjectStore(output_directory)
        self._factories: Dict[str, ObjectStoreFactory] = dict(factories or {})

    def register(self, kind: str, factory: ObjectStoreFactory) -> None:
        """Register the store factory for an upload kind (``s3``, ``gcp``, ``azure``, ``aliOSS``)."""
        self._factories[kind] = factory
        logger.info(f"Registered object store for {kind} uploads")

    def resolve(self, output: Any) -> ObjectStore:
        """
        Resolve the store for a file-like output message.

        Args:
            output: ``EncodedFileOutput``, ``SegmentedFileOutput`` or ``DirectFileOutput``

        Returns:
            ObjectStore the output uploads to

        Raises:
            ConfigurationError: If the destination is malformed or has no registered store
        """
        kind = output.WhichOneof("output")
        if kind is None:
            return self.local

        upload = getattr(output, kind)
        validate_upload(kind, upload)

        factory = self._factories.get(kind)
        if factory is None:
            raise ConfigurationError(f"no object store registered for {kind} uploads")
        return factory(upload)
