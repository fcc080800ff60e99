import base64
import binascii
from dataclasses import dataclass

DEFAULT_IMAGE_MIME = "image/png"


@dataclass(frozen=True)
class InlineImage:
    """Raw image bytes plus the mime type needed to interpret them."""

    data: bytes
    mime_type: str = DEFAULT_IMAGE_MIME


def to_data_uri(data: bytes, mime_type: str) -> str:
    """Embed image bytes in a self-contained data URI (no separate file storage)."""
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def parse_data_uri(uri: str) -> InlineImage:
    """Decode a `data:<mime>;base64,<payload>` URI back into bytes.

    Raises ValueError for anything that is not a base64 image data URI.
    """
    if not uri.startswith("data:") or "," not in uri:
        raise ValueError("Not a data URI")

    header, payload = uri[len("data:") :].split(",", 1)
    parts = header.split(";")
    if "base64" not in parts[1:]:
        raise ValueError("Only base64 data URIs are supported")

    mime_type = parts[0] or DEFAULT_IMAGE_MIME
    try:
        data = base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e

    return InlineImage(data=data, mime_type=mime_type)
