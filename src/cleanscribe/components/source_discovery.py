from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from cleanscribe.entity.artifact_entity import CleanArtifact, SourceFile
from cleanscribe.entity.config_entity import ALLOWED_EXTENSIONS, CLEAN_SUFFIX
from cleanscribe.exception.exception import ConfigurationError, EnvironmentCheckError, NamingCollisionError
from cleanscribe.logging.logger import get_logger
from cleanscribe.components.fingerprint_store import meta_path_for

logger = get_logger(__name__)


def clean_path_for(source: SourceFile | Path, clean_dir: Path) -> Path:
    """<clean-dir>/<source-stem>_clean.wav"""
    stem = source.stem if isinstance(source, SourceFile) else Path(source).stem
    return clean_dir / f"{stem}{CLEAN_SUFFIX}"


def snapshot_source(path: Path, extension: str) -> SourceFile:
    """Size/mtime of ``path`` as of now (whole-second mtime)."""
    st = path.stat()
    return SourceFile(path=path, extension=extension, size=int(st.st_size), mtime=int(st.st_mtime))


def discover_sources(input_dir: Path, extension: str, clean_dir: Path | None = None) -> List[SourceFile]:
    """
    Lists input_dir (not recursive) for files ending in .<extension>, any case.

    Raises NamingCollisionError when two files share a stem, since both
    would write the same clean artifact.
    """
    ext = extension.lower().lstrip(".")
    if ext not in ALLOWED_EXTENSIONS:
        raise ConfigurationError(f"unsupported extension: {extension}", context={"allowed": list(ALLOWED_EXTENSIONS)})
    if not input_dir.is_dir():
        raise EnvironmentCheckError(f"input_dir not found: {input_dir}")

    same_as_clean = clean_dir is not None and clean_dir.resolve() == input_dir.resolve()

    sources: List[SourceFile] = []
    for path in sorted(input_dir.iterdir(), key=lambda p: p.name):
        if not path.is_file():
            continue
        if path.suffix.lower() != f".{ext}":
            continue
        if same_as_clean and path.name.endswith(CLEAN_SUFFIX):
            logger.info(f"Ignoring clean artifact found among inputs: {path.name}")
            continue
        sources.append(snapshot_source(path, ext))

    by_stem: Dict[str, List[Path]] = {}
    for s in sources:
        by_stem.setdefault(s.stem, []).append(s.path)
    collisions = {stem: paths for stem, paths in by_stem.items() if len(paths) > 1}
    if collisions:
        raise NamingCollisionError(
            "source files map to the same clean artifact",
            context={f"{stem}{CLEAN_SUFFIX}": [p.name for p in paths] for stem, paths in collisions.items()},
        )

    return sources


def discover_clean_artifacts(clean_dir: Path) -> List[CleanArtifact]:
    """Every *_clean.wav currently in clean_dir, including ones from earlier runs."""
    if not clean_dir.is_dir():
        return []
    return [
        CleanArtifact(path=p, meta_path=meta_path_for(p))
        for p in sorted(clean_dir.iterdir(), key=lambda p: p.name)
        if p.is_file() and p.name.endswith(CLEAN_SUFFIX) and not p.name.startswith(".")
    ]
