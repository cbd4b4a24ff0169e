import os
from pathlib import Path
from typing import List, Optional

from .scheduler import ALLOWED_EXTENSIONS


def scan_input(
    input_path: str,
    recursive: bool = False,
    limit: Optional[int] = None,
    extensions: Optional[List[str]] = None,
) -> List[Path]:
    """
    Find uploadable video files.

    Args:
        input_path: File or directory path.
        recursive: Whether to search directories recursively.
        limit: Max number of files to return.
        extensions: Allowed extensions (e.g. ['mp4', 'mov']). If None, every
            extension the upload validator accepts.

    Returns:
        List of Path objects, sorted alphabetically.
    """
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Input path not found: {input_path}")

    allowed = set(extensions) if extensions else ALLOWED_EXTENSIONS
    allowed = {(e if e.startswith(".") else f".{e}").lower() for e in allowed}

    files = []
    if path.is_file():
        if path.suffix.lower() in allowed:
            files.append(path)
    elif recursive:
        for root, _, filenames in os.walk(path):
            for name in filenames:
                candidate = Path(root) / name
                if candidate.suffix.lower() in allowed:
                    files.append(candidate)
    else:
        files = [p for p in path.iterdir() if p.is_file() and p.suffix.lower() in allowed]

    # Deterministic order for batch uploads
    files.sort(key=lambda p: str(p))

    if limit:
        files = files[:limit]

    return files
