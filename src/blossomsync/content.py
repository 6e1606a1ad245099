import hashlib
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .constants import DEFAULT_MIME_TYPE

JPEG_SOI = b"\xff\xd8"
JPEG_EOI = 0xD9
JPEG_SOS = 0xDA
JPEG_APP1 = 0xE1

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PNG_METADATA_CHUNKS = {b"eXIf", b"tEXt", b"zTXt", b"iTXt"}


@dataclass
class ProcessedContent:
    sha256: str
    data: bytes
    size: int


def strip_jpeg_metadata(data: bytes) -> bytes:
    """
    Drop APP1 (Exif/XMP) segments.
    Every other segment and the scan data from SOS onward are copied verbatim.
    Malformed or truncated input is returned unchanged.
    """
    if not data.startswith(JPEG_SOI):
        return data

    out = bytearray(JPEG_SOI)
    pos = 2
    end = len(data)
    while True:
        # Find next marker
        while pos < end and data[pos] != 0xFF:
            pos += 1
        while pos < end and data[pos] == 0xFF:
            pos += 1
        if pos >= end:
            return data
        marker = data[pos]
        pos += 1

        if marker == JPEG_SOS:
            out += bytes((0xFF, marker))
            out += data[pos:]
            return bytes(out)
        if marker == JPEG_EOI:
            out += bytes((0xFF, marker))
            return bytes(out)

        if pos + 2 > end:
            return data
        length = int.from_bytes(data[pos:pos + 2], "big")
        if length < 2 or pos + length > end:
            return data
        if marker != JPEG_APP1:
            out += bytes((0xFF, marker))
            out += data[pos:pos + length]
        pos += length


def strip_png_metadata(data: bytes) -> bytes:
    """
    Drop eXIf, tEXt, zTXt and iTXt chunks; all other chunks stay byte-identical.
    Bad signatures and truncated chunks are returned unchanged.
    """
    if not data.startswith(PNG_SIGNATURE):
        return data

    out = bytearray(PNG_SIGNATURE)
    pos = len(PNG_SIGNATURE)
    end = len(data)
    while pos + 8 <= end:
        length = int.from_bytes(data[pos:pos + 4], "big")
        chunk_type = data[pos + 4:pos + 8]
        chunk_end = pos + 8 + length + 4  # header + data + CRC
        if chunk_end > end:
            return data
        if chunk_type not in PNG_METADATA_CHUNKS:
            out += data[pos:chunk_end]
        pos = chunk_end
        if chunk_type == b"IEND":
            break
    return bytes(out)


class ContentProcessor:
    """Canonicalizes file bytes so identical visual content hashes identically."""

    def __init__(self, strip_metadata: bool = True):
        self.strip_metadata = strip_metadata

    def canonicalize(self, data: bytes, mime_type: Optional[str]) -> bytes:
        if not self.strip_metadata or not mime_type:
            return data
        mime_type = mime_type.lower()
        if mime_type.startswith("image/jpeg"):
            return strip_jpeg_metadata(data)
        if mime_type.startswith("image/png"):
            return strip_png_metadata(data)
        return data

    def process(self, data: bytes, mime_type: Optional[str]) -> ProcessedContent:
        canonical = self.canonicalize(data, mime_type)
        return ProcessedContent(
            sha256=hashlib.sha256(canonical).hexdigest(),
            data=canonical,
            size=len(canonical),
        )

    def process_file(self, path: Union[str, Path], mime_type: Optional[str] = None) -> ProcessedContent:
        path = Path(path)
        with open(path, 'rb') as f:
            data = f.read()
        return self.process(data, mime_type or guess_mime_type(path))


def guess_mime_type(path: Union[str, Path]) -> str:
    mime_type, _ = mimetypes.guess_type(str(path))
    return mime_type or DEFAULT_MIME_TYPE
