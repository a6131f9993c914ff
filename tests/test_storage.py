import pytest

from errors import ValidationError

from .conftest import JPEG_BYTES


def test_upload_replace_and_remove(store):
    url = store.upload(7, JPEG_BYTES, "image/jpeg")
    assert url == "/storage/items/7.jpg"
    assert store.exists(7)

    store.upload(7, JPEG_BYTES + b"\x01", "image/jpeg")
    with open(store._path(7), "rb") as fh:
        assert fh.read().endswith(b"\x01")

    store.remove(7)
    assert not store.exists(7)
    store.remove(7)


@pytest.mark.parametrize(
    "data, content_type",
    [
        (JPEG_BYTES, "image/png"),
        (b"GIF89a", "image/jpeg"),
    ],
)
def test_rejects_non_jpeg(store, data, content_type):
    with pytest.raises(ValidationError):
        store.upload(1, data, content_type)
    assert not store.exists(1)
