"""
askfile File Operations Module
Session identifiers, file/directory collection and scratch script writing
"""

import os
import re
from pathlib import Path
from typing import Dict, List

_SEPARATOR_RE = re.compile(r"[\\/]")
_DISALLOWED_RE = re.compile(r"[^A-Za-z0-9_\-]")

DEFAULT_IDENTIFIER = "default"
BLOCK_DELIMITER = "---"


def derive_identifier(file_or_dir: str) -> str:
    """
    Turn a filesystem path into a filesystem-safe session key.

    Path separators become underscores and every other character outside
    [A-Za-z0-9_-] is dropped. Paths that sanitize to nothing (".", "")
    share the DEFAULT_IDENTIFIER session.
    """
    sanitized = _SEPARATOR_RE.sub("_", file_or_dir or "")
    sanitized = _DISALLOWED_RE.sub("", sanitized)
    return sanitized or DEFAULT_IDENTIFIER


def walk_directory(directory: str) -> List[str]:
    """
    List every file under a directory, depth-first.

    Subdirectories are expanded fully before their later siblings, in the
    order the filesystem lists them. Returned paths keep the directory
    argument as their prefix.
    """
    file_list = []
    for name in os.listdir(directory):
        file_path = os.path.join(directory, name)
        if os.path.isdir(file_path):
            file_list.extend(walk_directory(file_path))
        else:
            file_list.append(file_path)
    return file_list


def _read_text(file_path: str) -> str:
    with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
        return f.read()


def format_file_block(file_path: str) -> str:
    """Render one file of a directory listing with its path, extension and text."""
    extension = os.path.splitext(file_path)[1]
    return (
        f"FILE_NAME: {file_path}\n"
        f"FILE_TYPE: {extension}\n"
        f"FILE_CONTENT:\n{_read_text(file_path)}\n"
        f"{BLOCK_DELIMITER}\n"
    )


def collect_content(file_or_dir: str) -> str:
    """
    Read a file, or every file under a directory, into one prompt blob.

    Args:
        file_or_dir: Path that must exist

    Returns:
        Text with one FILE_NAME block per file

    Raises:
        OSError: if the path is missing or an entry cannot be read
    """
    if os.path.isdir(file_or_dir):
        return "".join(format_file_block(p) for p in walk_directory(file_or_dir))

    # Missing paths surface here as FileNotFoundError
    return f"FILE_NAME: {file_or_dir}\nFILE_CONTENT: {_read_text(file_or_dir)}"


def write_script(file_path: str, content: str) -> Dict:
    """
    Write extracted code to the scratch script.

    Args:
        file_path: Destination path
        content: Script source

    Returns:
        Dictionary with operation result
    """
    result = {
        "success": False,
        "file": file_path,
        "bytes_written": 0,
        "error": None
    }

    try:
        target_path = Path(file_path)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        with open(target_path, 'w', encoding='utf-8') as f:
            f.write(content)
        result["bytes_written"] = len(content.encode('utf-8'))
        result["success"] = True
    except OSError as e:
        result["error"] = str(e)

    return result
