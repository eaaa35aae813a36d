from enum import Enum

from content_store import config


class Route(str, Enum):
    REJECT = "reject"
    INLINE = "inline"
    CHUNKED = "chunked"


def route(size: int, inline_max_size: int = None, max_upload_size: int = None) -> Route:
    """Pick the storage tier for a payload of ``size`` bytes.

    Payloads up to ``INLINE_MAX_SIZE`` are kept inline, anything up to
    ``MAX_UPLOAD_SIZE`` goes to the chunked tier and larger payloads are
    rejected. Both bounds are inclusive.
    """
    if size < 0:
        raise ValueError(f"Payload size cannot be negative: {size}")
    inline_max_size = config.INLINE_MAX_SIZE if inline_max_size is None else inline_max_size
    max_upload_size = config.MAX_UPLOAD_SIZE if max_upload_size is None else max_upload_size

    if size > max_upload_size:
        return Route.REJECT
    if size > inline_max_size:
        return Route.CHUNKED
    return Route.INLINE
