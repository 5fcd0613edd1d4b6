import io

from PIL import Image

from messagebox.media import DEFAULT_MIME, sniff_mime_type, stage_media
from messagebox.models import MediaFile


def _png() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_unnamed_image_gets_name_and_type_from_content() -> None:
    [staged] = stage_media([MediaFile(content=_png())])

    assert staged["name"] == "image-1.png"
    assert staged["mimeType"] == "image/png"


def test_declared_type_and_name_are_kept() -> None:
    content = _png()
    staged = stage_media(
        [MediaFile(filename="bike.JPG", content=content), MediaFile(filename="scan", content=content, mime_type="image/webp")]
    )

    assert staged[0]["name"] == "bike.JPG"
    assert staged[0]["mimeType"] == "image/jpeg"
    assert staged[1]["name"] == "scan.webp"
    assert staged[1]["buffer"] == content


def test_unreadable_bytes_fall_back_to_octet_stream() -> None:
    assert sniff_mime_type(b"not an image") is None
    [staged] = stage_media([MediaFile(content=b"not an image")])

    assert staged["mimeType"] == DEFAULT_MIME
