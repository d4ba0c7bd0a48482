"""
Resolve bundled model assets.

An asset is either a plain file or an entry of an application archive,
addressed as "<archive>!/<entry>". Model entries must be stored without
compression so the runtime can map them as-is.
"""
import logging
import os
import zipfile
from dataclasses import dataclass
from typing import Optional

from signlang.common.errors import LoadError

logger = logging.getLogger(__name__)

ARCHIVE_SEPARATOR = "!/"
NO_COMPRESS_SUFFIXES = (".tflite", ".lite", ".onnx")


@dataclass
class ModelAsset:
    key: str # Normalized asset path, used as the cache key
    suffix: str
    path: Optional[str] = None # Set for plain files
    content: Optional[bytes] = None # Set for archive entries


def normalize_asset_path(asset_path: str) -> str:
    if ARCHIVE_SEPARATOR in asset_path:
        archive, entry = asset_path.split(ARCHIVE_SEPARATOR, 1)
        return f"{os.path.abspath(archive)}{ARCHIVE_SEPARATOR}{entry.lstrip('/')}"
    return os.path.abspath(asset_path)


def open_asset(asset_path: str) -> ModelAsset:
    key = normalize_asset_path(asset_path)
    if ARCHIVE_SEPARATOR not in key:
        if not os.path.isfile(key):
            raise LoadError(asset_path, "asset file does not exist")
        return ModelAsset(key=key, suffix=os.path.splitext(key)[1].lower(), path=key)

    archive, entry = key.split(ARCHIVE_SEPARATOR, 1)
    if not os.path.isfile(archive):
        raise LoadError(asset_path, f"archive {archive} does not exist")
    try:
        with zipfile.ZipFile(archive) as zf:
            try:
                info = zf.getinfo(entry)
            except KeyError:
                raise LoadError(asset_path, f"entry {entry} not found in archive") from None
            suffix = os.path.splitext(entry)[1].lower()
            if suffix in NO_COMPRESS_SUFFIXES and info.compress_type != zipfile.ZIP_STORED:
                raise LoadError(asset_path, "model entry is compressed, it must be stored uncompressed")
            content = zf.read(entry)
    except zipfile.BadZipFile as e:
        raise LoadError(asset_path, f"archive is corrupt: {e}") from e
    logger.debug(f"Read {len(content)} bytes of {entry} from {archive}")
    return ModelAsset(key=key, suffix=suffix, content=content)
