"""
Image format sniffing by file signature
"""

from invoex.exceptions import UnsupportedImageError

_SIGNATURES = [
    (b'\x89PNG\r\n\x1a\n', 'image/png'),
    (b'\xff\xd8\xff', 'image/jpeg'),
    (b'GIF87a', 'image/gif'),
    (b'GIF89a', 'image/gif'),
    (b'BM', 'image/bmp'),
]


def detect_media_type(data: bytes) -> str:
    """MIME type of an image buffer, or UnsupportedImageError"""
    if not data:
        raise UnsupportedImageError("Empty image buffer")
    if data[:4] == b'RIFF' and data[8:12] == b'WEBP':
        return 'image/webp'
    for signature, media_type in _SIGNATURES:
        if data.startswith(signature):
            return media_type
    raise UnsupportedImageError(f"Unrecognised image signature: {data[:8].hex()}")

