import logging
import os
from typing import Annotated

from fastapi import Depends

from config import settings
from errors import ValidationError

logger = logging.getLogger(__name__)

JPEG_MAGIC = b"\xff\xd8\xff"


class ItemImageStore:
    """
    Blob store for item pictures, one "<item_id>.jpg" file per item.
    The directory is served read-only by StaticFiles under `base_url`.
    """

    def __init__(self, directory: str, base_url: str):
        self.directory = directory
        self.base_url = base_url.rstrip("/")
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, item_id: int) -> str:
        return os.path.join(self.directory, f"{item_id}.jpg")

    def public_url(self, item_id: int) -> str:
        return f"{self.base_url}/{item_id}.jpg"

    def exists(self, item_id: int) -> bool:
        return os.path.isfile(self._path(item_id))

    @staticmethod
    def validate(data: bytes, content_type: str | None) -> None:
        if content_type != "image/jpeg" or not data.startswith(JPEG_MAGIC):
            raise ValidationError("Only JPEG images are allowed")

    def upload(self, item_id: int, data: bytes, content_type: str | None) -> str:
        """Store (or replace) the JPEG image of an item and return its URL."""
        self.validate(data, content_type)

        tmp_path = self._path(item_id) + ".part"
        with open(tmp_path, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, self._path(item_id))
        logger.info("Stored image for item %s (%d bytes)", item_id, len(data))
        return self.public_url(item_id)

    def remove(self, item_id: int) -> None:
        try:
            os.remove(self._path(item_id))
        except FileNotFoundError:
            return
        logger.info("Removed image for item %s", item_id)


image_store = ItemImageStore(settings.STORAGE_DIR, settings.STORAGE_URL)


def get_image_store() -> ItemImageStore:
    return image_store


ImageStoreDep = Annotated[ItemImageStore, Depends(get_image_store)]
