import hashlib
from pathlib import Path
from typing import Union

def format_file_size(size: int) -> str:
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"

def file_sha1(file_path: Union[str, Path]) -> str:
    """SHA1 hex digest of a file, read in 64KB blocks."""
    hash_sha1 = hashlib.sha1()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hash_sha1.update(chunk)
    return hash_sha1.hexdigest()
