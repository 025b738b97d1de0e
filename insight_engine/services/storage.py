import abc
import os
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from insight_engine.core.config import settings

# Jobs created from client-side extracted text carry "text-<id>" as their
# file path; nothing exists on disk for them.
VIRTUAL_PATH_PREFIX = "text-"


def is_virtual_path(file_ref: str) -> bool:
    return not file_ref or file_ref.startswith(VIRTUAL_PATH_PREFIX)


class StorageProvider(abc.ABC):
    """
    Abstract base class for uploaded deck storage.
    """

    @abc.abstractmethod
    def save_upload(self, file_obj: BinaryIO, filename: str) -> str:
        """
        Save an uploaded file and return a reference path.
        """
        pass

    @abc.abstractmethod
    def delete(self, file_ref: str) -> bool:
        """
        Delete the file. Returns False when there was nothing to delete.
        """
        pass


class LocalStorageProvider(StorageProvider):
    """
    Stores uploads in a local directory (default: <tmp>/insight-engine-uploads).
    """
    def __init__(self, base_dir: str = None):
        self.base_dir = Path(base_dir or settings.UPLOAD_DIR)

    def save_upload(self, file_obj: BinaryIO, filename: str) -> str:
        # Created lazily: cleanup removes the directory once it is empty
        self.base_dir.mkdir(parents=True, exist_ok=True)

        # Create a unique filename to prevent collisions
        ext = Path(filename or "").suffix
        unique_name = f"{uuid.uuid4()}{ext}"
        target_path = self.base_dir / unique_name

        with open(target_path, "wb") as buffer:
            shutil.copyfileobj(file_obj, buffer)

        return str(target_path)

    def delete(self, file_ref: str) -> bool:
        if is_virtual_path(file_ref):
            return False
        try:
            os.remove(file_ref)
            return True
        except FileNotFoundError:
            return False
