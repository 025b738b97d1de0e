"""
file_validation.py
~~~~~~~~~~~~~~~~~~
Security hardening for deck uploads.
Validates file content using Magic Numbers (signatures) instead of just extensions,
and maps each accepted upload to the MIME type stored on the job.
"""
import logging
from fastapi import UploadFile, HTTPException

logger = logging.getLogger(__name__)

# Magic Numbers (File Signatures)
SIGNATURES = {
    "pdf":  b"%PDF",
    # Office Open XML (pptx, docx) - technically ZIP archives
    "ooxml": b"\x50\x4B\x03\x04",
    # Legacy Microsoft Office (ppt, doc) - OLE2 Compound File
    "ole2": b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1",
}

MIME_TYPES = {
    ".pdf":  "application/pdf",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".ppt":  "application/vnd.ms-powerpoint",
    ".doc":  "application/msword",
    ".txt":  "text/plain",
    ".md":   "text/plain",
}

_SIGNATURE_FOR_EXTENSION = {
    ".pdf": "pdf",
    ".pptx": "ooxml",
    ".docx": "ooxml",
    ".ppt": "ole2",
    ".doc": "ole2",
}

TEXT_SNIFF_BYTES = 1024


def _extension(filename: str) -> str:
    dot = filename.rfind(".")
    return filename[dot:].lower() if dot != -1 else ""


def looks_like_text(sample: bytes) -> bool:
    """Binary files almost always contain NUL bytes within the first KB."""
    return b"\x00" not in sample


async def validate_file_signature(file: UploadFile) -> str:
    """
    Validate file content matches its extension using magic numbers.
    Returns the MIME type to record on the job.
    Raises HTTPException(400) if invalid.
    Resets file pointer to 0 after checking.
    """
    filename = (file.filename or "").lower()
    ext = _extension(filename)

    if ext not in MIME_TYPES:
        logger.warning(f"Validation failed: unsupported upload type '{ext or filename}'.")
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type. Allowed: {', '.join(sorted(MIME_TYPES))}",
        )

    # Read start of file
    await file.seek(0)
    header = await file.read(TEXT_SNIFF_BYTES)
    await file.seek(0)  # Reset immediately

    if not header:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    signature_name = _SIGNATURE_FOR_EXTENSION.get(ext)
    if signature_name:
        if not header.startswith(SIGNATURES[signature_name]):
            logger.warning(f"Validation failed: {filename} claims to be {ext} but lacks its signature.")
            raise HTTPException(
                status_code=400,
                detail=f"Invalid file content. Extension says {ext} but content does not match.",
            )
    elif not looks_like_text(header):
        logger.warning(f"Validation failed: {filename} contains null bytes, likely binary.")
        raise HTTPException(
            status_code=400,
            detail="Invalid file content. Text file appears to be binary.",
        )

    return MIME_TYPES[ext]
