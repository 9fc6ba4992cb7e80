# 2026-10-16  tiny_utils/general.py

import os


def get_folder_size(path: str) -> int:
    """Get the size of a folder in bytes."""
    return sum(get_entry_size(os.path.join(path, f))
               for f in os.listdir(path))


def get_entry_size(path: str) -> int:
    """
    Get the size of a file or folder in bytes.
    Symlinks count as nothing; their targets are counted where they live.
    """
    if os.path.islink(path):
        return 0
    return os.path.getsize(path) \
               if os.path.isfile(path) \
               else get_folder_size(path)


def size_text(size: int) -> str:
    """Convert a size in bytes to a human-readable string."""
    if size < 1024:
        return "{:d} B".format(size)
    if size < 1024 ** 2:
        return "{:.2f} KiB".format(size / 1024)
    if size < 1024 ** 3:
        return "{:.2f} MiB".format(size / 1024 ** 2)
    return "{:.2f} GiB".format(size / 1024 ** 3)


def env_flag(name: str, default: bool) -> bool:
    """'1', 'true', 'yes', 'on' (any case) -> True."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')
