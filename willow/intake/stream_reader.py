"""Stream Reader — decodes a chunked reply stream into a growing text buffer."""
import asyncio
import codecs
import logging
from typing import AsyncIterable, Callable

import httpx

from willow.errors import TransportError

logger = logging.getLogger(__name__)


async def read_stream(
    chunks: AsyncIterable[bytes | str],
    on_text: Callable[[str], None],
    cancel: asyncio.Event,
) -> str | None:
    """Pull chunks until end-of-stream, calling ``on_text`` with the full buffer after each.

    Decoder state persists across chunks so a multi-byte character split
    over a chunk boundary decodes once both halves arrived.

    Returns the complete text, or None if ``cancel`` fired mid-read (no
    callback is made after that point).

    Raises:
        TransportError: The underlying read failed. Not retried here.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    try:
        async for chunk in chunks:
            if cancel.is_set():
                return None
            text = chunk if isinstance(chunk, str) else decoder.decode(chunk)
            if not text:
                continue
            buffer += text
            on_text(buffer)
    except (httpx.HTTPError, OSError) as e:
        if cancel.is_set():
            return None
        raise TransportError(f"Reply stream failed: {e}") from e

    if cancel.is_set():
        return None
    tail = decoder.decode(b"", final=True)
    if tail:
        buffer += tail
        on_text(buffer)
    return buffer
