# x402_relay/core/version.py
"""Service version reported by /health and the OpenAPI schema."""
import subprocess
from functools import lru_cache
from importlib import metadata
from pathlib import Path
from typing import Optional

VERSION_FILE = Path(__file__).resolve().parents[2] / "VERSION"
DISTRIBUTION_NAME = "x402-relay"
UNKNOWN_VERSION = "0.0.0-unknown"


def _git(*args: str) -> Optional[str]:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    return result.stdout.strip() or None


@lru_cache()
def get_version() -> str:
    """
    Resolve the version, first match wins:

    1. VERSION file next to the package (container images write one)
    2. Installed x402-relay distribution metadata
    3. ``0.<commit count>.<short hash>`` from git
    4. 0.0.0-unknown
    """
    if VERSION_FILE.is_file():
        pinned = VERSION_FILE.read_text().strip()
        if pinned:
            return pinned

    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        pass

    commits = _git("rev-list", "--count", "HEAD")
    short_hash = _git("rev-parse", "--short", "HEAD")
    if commits and short_hash:
        return f"0.{commits}.{short_hash}"
    return UNKNOWN_VERSION


VERSION = get_version()
