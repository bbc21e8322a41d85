"""
Fingerprint sidecars for derived artifacts.

A fingerprint records what produced an artifact: a hash of the settings
(the ffmpeg filter chain for clean WAVs) and the source file's size and
mtime. It lives next to the artifact as ``<artifact>.meta``:

    filter_sha=<sha256 hex>
    input_size=<bytes>
    input_mtime=<epoch seconds>

Anything unexpected while reading it counts as a cache miss.
"""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Dict, List, Optional

from cleanscribe.entity.artifact_entity import Fingerprint, SourceFile
from cleanscribe.logging.logger import get_logger
from cleanscribe.utils.io_utils import atomic_write_text

logger = get_logger(__name__)

META_SUFFIX = ".meta"
_KEYS = ("filter_sha", "input_size", "input_mtime")


def compute_fingerprint(text: str) -> str:
    """SHA-256 hex digest of a settings string (same as ``printf %s | sha256sum``)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def meta_path_for(artifact_path: Path) -> Path:
    return artifact_path.with_name(artifact_path.name + META_SUFFIX)


def current_fingerprint(source: Path | SourceFile, key_hash: str) -> Fingerprint:
    """A SourceFile's size/mtime from discovery are used as-is; a bare path is stat'ed now."""
    if isinstance(source, SourceFile):
        return Fingerprint(filter_sha=key_hash, input_size=int(source.size), input_mtime=int(source.mtime))
    st = Path(source).stat()
    return Fingerprint(filter_sha=key_hash, input_size=int(st.st_size), input_mtime=int(st.st_mtime))


def changed_fields(recorded: Fingerprint, current: Fingerprint) -> List[str]:
    return [k for k in _KEYS if getattr(recorded, k) != getattr(current, k)]


def _parse(text: str) -> Optional[Fingerprint]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        key, sep, value = line.partition("=")
        if not sep:
            return None
        values[key.strip()] = value.strip()

    if any(k not in values for k in _KEYS):
        return None
    try:
        return Fingerprint(
            filter_sha=values["filter_sha"],
            input_size=int(values["input_size"]),
            input_mtime=int(values["input_mtime"]),
        )
    except ValueError:
        return None


class FingerprintStore:
    """Reads and writes ``.meta`` sidecars.

    ``meta_path`` can be passed explicitly when the sidecar does not sit at
    ``<artifact>.meta`` (transcript sets have several member files).
    """

    def read(self, meta_path: Path) -> Optional[Fingerprint]:
        try:
            text = meta_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        return _parse(text)

    def check(
        self,
        source: Path | SourceFile,
        artifact_path: Path,
        key_hash: str,
        meta_path: Optional[Path] = None,
    ) -> Optional[str]:
        """None when the artifact can be reused, else why it cannot."""
        meta_path = meta_path or meta_path_for(artifact_path)
        if not artifact_path.is_file():
            return "artifact missing"
        if not meta_path.is_file():
            return "fingerprint missing"

        recorded = self.read(meta_path)
        if recorded is None:
            logger.warning(f"Unreadable fingerprint, treating as stale: {meta_path}")
            return "fingerprint unreadable"

        try:
            current = current_fingerprint(source, key_hash)
        except OSError as e:
            return f"source unreadable: {e}"

        changed = changed_fields(recorded, current)
        if changed:
            return "changed: " + ", ".join(
                f"{k} {getattr(recorded, k)} -> {getattr(current, k)}" for k in changed
            )
        return None

    def is_valid(
        self,
        source: Path | SourceFile,
        artifact_path: Path,
        key_hash: str,
        meta_path: Optional[Path] = None,
    ) -> bool:
        return self.check(source, artifact_path, key_hash, meta_path=meta_path) is None

    def record(
        self,
        source: Path | SourceFile,
        artifact_path: Path,
        key_hash: str,
        meta_path: Optional[Path] = None,
    ) -> Fingerprint:
        """Write the sidecar. Call only once the artifact is fully in place."""
        meta_path = meta_path or meta_path_for(artifact_path)
        fp = current_fingerprint(source, key_hash)
        atomic_write_text(
            f"filter_sha={fp.filter_sha}\ninput_size={fp.input_size}\ninput_mtime={fp.input_mtime}\n",
            meta_path,
        )
        return fp

    def invalidate(self, artifact_path: Path, meta_path: Optional[Path] = None) -> None:
        (meta_path or meta_path_for(artifact_path)).unlink(missing_ok=True)
