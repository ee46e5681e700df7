from fastapi import HTTPException, UploadFile

ALLOWED_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


def _signature_ok(content: bytes) -> bool:
    return (
        content.startswith(b"\xff\xd8")
        or content.startswith(b"\x89PNG")
        or content.startswith(b"GIF8")
        or (content[:4] == b"RIFF" and content[8:12] == b"WEBP")
    )


async def read_image_upload(file: UploadFile, max_size_mb: int) -> bytes:
    """Read an uploaded image, rejecting oversized, empty or non-image files."""
    content = await file.read()
    if not content:
        raise HTTPException(400, "Empty file")
    if len(content) > max_size_mb * 1024 * 1024:
        raise HTTPException(413, f"File too large (max {max_size_mb}MB)")
    if file.content_type not in ALLOWED_TYPES:
        raise HTTPException(400, f"Unsupported file type {file.content_type}")
    if not _signature_ok(content):
        raise HTTPException(400, "File signature mismatch")
    return content
