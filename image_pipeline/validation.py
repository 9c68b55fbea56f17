"""Object key decoding and image-type classification."""

from urllib.parse import unquote_plus

from .errors import MalformedKey, UnsupportedType
from .model import Accept, Classification, Reject

SUPPORTED_IMAGE_TYPES = frozenset({"jpeg", "png"})


def decode_key(raw_key: str) -> str:
    """Decodes an S3 notification key: '+' becomes a space, then percent-decoding."""
    return unquote_plus(raw_key)


def classify(object_key: str) -> Classification:
    """
    Classifies an object key by its file extension.

    The extension is the text after the final '.'. It is lower-cased and must
    be one of SUPPORTED_IMAGE_TYPES.

    Returns:
        Accept(image_type) for supported images, Reject(reason) otherwise.
    """
    _, dot, suffix = object_key.rpartition(".")
    if not dot:
        return Reject(reason="no extension")
    image_type = suffix.lower()
    if image_type not in SUPPORTED_IMAGE_TYPES:
        return Reject(reason=f"unsupported type: {image_type}", image_type=image_type)
    return Accept(image_type=image_type)


def require_supported(object_key: str) -> str:
    """
    Returns the image type of `object_key` or raises the matching permanent error.

    Raises:
        MalformedKey: If the key has no extension.
        UnsupportedType: If the extension is not an accepted image type.
    """
    result = classify(object_key)
    if isinstance(result, Accept):
        return result.image_type
    if result.image_type is None:
        raise MalformedKey(f"Could not determine the image type of {object_key!r}: {result.reason}", key=object_key)
    raise UnsupportedType(
        f"Unsupported image type for {object_key!r}: {result.reason}", key=object_key, image_type=result.image_type
    )
