"""Application version lookup from VERSION files."""

from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple


VERSION_FILE_CANDIDATES: Tuple[Path, ...] = (
    Path("/app/VERSION"),
    Path(__file__).resolve().parent.parent / "VERSION",
)


def get_app_version_info(
    version_file_candidates: Optional[Iterable[Path]] = None,
) -> Dict[str, str]:
    """Read the version from the first readable, non-empty VERSION file.

    Args:
        version_file_candidates: Ordered candidate paths. Defaults to the
            container image path, then the repository root.

    Returns:
        Dictionary with ``version`` and ``source`` ("unknown" when nothing is found).
    """
    for candidate in version_file_candidates or VERSION_FILE_CANDIDATES:
        if not candidate.exists():
            continue
        try:
            version = candidate.read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if version:
            return {"version": version, "source": str(candidate)}

    return {"version": "unknown", "source": "unknown"}


def get_version() -> str:
    return get_app_version_info()["version"]
