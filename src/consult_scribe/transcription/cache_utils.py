"""On-disk locations for downloaded models, and helpers to size and clear them."""

import shutil
from pathlib import Path

CACHE_ROOT = Path.home() / ".cache" / "consult_scribe" / "transcription"

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def get_cache_root(cache_name: str | None = None) -> Path:
    """
    Resolve (and create) a directory under the pipeline cache root.

    Args:
        cache_name: Optional subdirectory, e.g. ``"models"``

    Returns:
        Path to the existing directory
    """
    path = CACHE_ROOT / cache_name if cache_name else CACHE_ROOT
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_models_cache_dir() -> Path:
    """Directory of model assets fetched by ModelAssetCache."""
    return get_cache_root("models")


def get_recognizer_cache_dir() -> Path:
    """Directory faster-whisper downloads the streaming recognizer model into."""
    return get_cache_root("models/recognizer")


def get_cache_size(cache_path: Path) -> int:
    """Total bytes of regular files below ``cache_path`` (0 if it does not exist)."""
    if not cache_path.exists():
        return 0

    total = 0
    for item in cache_path.rglob("*"):
        try:
            if item.is_file():
                total += item.stat().st_size
        except OSError:
            # Partial downloads are renamed into place while we walk
            continue
    return total


def format_cache_size(size_bytes: int) -> str:
    """
    Render a byte count like ``"1.5 GB"``.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size
    """
    size = float(size_bytes)
    for unit in SIZE_UNITS[:-1]:
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} {SIZE_UNITS[-1]}"


def describe_models_cache() -> dict[str, str | int]:
    """Location and size of the model cache, split into assets and recognizer models."""
    models_dir = get_models_cache_dir()
    recognizer_dir = get_recognizer_cache_dir()
    recognizer_bytes = get_cache_size(recognizer_dir)
    total_bytes = get_cache_size(models_dir)
    return {
        "path": str(models_dir),
        "total_bytes": total_bytes,
        "assets": format_cache_size(total_bytes - recognizer_bytes),
        "recognizer": format_cache_size(recognizer_bytes),
        "total": format_cache_size(total_bytes),
    }


def clear_models_cache(cache_dir: Path | None = None) -> bool:
    """
    Delete every downloaded model; they are fetched again on next use.

    Args:
        cache_dir: Directory to clear (defaults to the models cache)

    Returns:
        True if the directory is now empty, False if it could not be removed
    """
    target = cache_dir or get_models_cache_dir()
    try:
        shutil.rmtree(target)
    except FileNotFoundError:
        pass
    except OSError:
        return False
    target.mkdir(parents=True, exist_ok=True)
    return True
