# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import platform
import re
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .log import get_logger
from .model import CacheDescriptor

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-keyed caching:
#   cache_key = descriptor.key.format(
#       os=<runner os>,
#       hash=sha256(sha256(file) for each file matching descriptor.hash_files),
#   )
#
# Cache artifact:
#   root/<key>.tar.gz          one member group per declared path prefix
#   root/<key>.manifest.json   what was saved, for explainability
#
# Jobs restore before running and save after success. Several jobs may share
# one key; the last successful writer wins.
# ---------------------------------------------------------------------

# top-level directories never hashed or archived
DEFAULT_CACHE_EXCLUDES = (".git", ".relayci")

logger = get_logger(__name__)

# a declared path that is a single file is archived as "f<idx>" (no slash),
# directory contents as "<idx>/<relative path>"
_WHOLE_FILE_PREFIX = "f"


class CacheIOError(Exception):
    """Restoring or saving a cache artifact failed. The caller carries on without cache."""


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    files: int = 0


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return p.relative_to(root).as_posix()


def _excluded(rel: str) -> bool:
    return rel.split("/", 1)[0] in DEFAULT_CACHE_EXCLUDES


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() and not p.is_symlink():
            yield p


def hash_files(repo_root: str | Path, patterns: Iterable[str]) -> str:
    """
    Digest of every file matching the globs, stable across runs.

    Returns "" when nothing matches so a key template still formats.
    """
    root = Path(repo_root).resolve()
    matched: Dict[str, Path] = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        for p in root.glob(pat):
            if not p.is_file():
                continue
            rel = _relpath(p, root)
            if _excluded(rel):
                continue
            matched[rel] = p

    if not matched:
        return ""

    h = hashlib.sha256()
    for rel in sorted(matched):
        h.update(_hash_file_contents(matched[rel]).encode("ascii"))
    return h.hexdigest()


def runner_os() -> str:
    return platform.system() or "unknown"


def compute_cache_key(descriptor: CacheDescriptor, repo_root: str | Path = ".") -> str:
    return descriptor.key.format(os=runner_os(), hash=hash_files(repo_root, descriptor.hash_files))


def _resolve_prefix(prefix: str, repo_root: Path) -> Path:
    p = Path(prefix).expanduser()
    if not p.is_absolute():
        p = repo_root / p
    return p


def _member_destination(name: str, targets: List[Path]) -> Optional[Path]:
    """Where an archive member goes on restore, or None for members we did not write."""
    if "/" not in name:
        idx = name[len(_WHOLE_FILE_PREFIX):]
        if not name.startswith(_WHOLE_FILE_PREFIX) or not idx.isdigit() or int(idx) >= len(targets):
            return None
        return targets[int(idx)].resolve()

    idx, _, rel = name.partition("/")
    if not idx.isdigit() or int(idx) >= len(targets) or not rel:
        return None
    base = targets[int(idx)].resolve()
    dest = (base / rel).resolve()
    if base not in dest.parents:
        raise CacheIOError(f"refusing to extract {name!r} outside {base}")
    return dest


def _safe_filename(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", key)


class CacheStore:
    """
    File-based cache store:
      root/
        <key>.tar.gz
        <key>.manifest.json

    Each declared path prefix is archived under its index ("0/", "1/", ...)
    and extracted back beneath the same prefix on restore. The store's own
    directory is never archived, even when a declared path contains it.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(_safe_filename(key), threading.Lock())

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{_safe_filename(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{_safe_filename(key)}.manifest.json"

    def exists(self, key: str) -> bool:
        return self.artifact_path(key).exists()

    def restore(self, descriptor: CacheDescriptor, key: str, *, repo_root: str | Path = ".") -> CacheHit:
        """
        Extract the artifact stored under `key` back into the declared paths.

        A missing artifact is a miss, not an error. Restore overwrites files
        that already exist; it does not delete extra ones.
        """
        root = Path(repo_root).resolve()
        art = self.artifact_path(key)

        with self._lock(key):
            if not art.exists():
                return CacheHit(hit=False, key=key, reason="cache miss")

            targets = [_resolve_prefix(p, root) for p in descriptor.paths]
            restored = 0
            try:
                with tarfile.open(str(art), mode="r:gz") as tar:
                    for member in tar:
                        if not member.isfile():
                            continue
                        dest = _member_destination(member.name, targets)
                        if dest is None:
                            continue
                        src = tar.extractfile(member)
                        if src is None:
                            continue
                        dest.parent.mkdir(parents=True, exist_ok=True)
                        with src, dest.open("wb") as out:
                            out.write(src.read())
                        os.chmod(dest, member.mode & 0o777)
                        restored += 1
            except (OSError, tarfile.TarError) as e:
                raise CacheIOError(f"restore of {key!r} failed: {e}") from e

        logger.debug("restored %d file(s) from %s", restored, art)
        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", files=restored)

    def save(self, descriptor: CacheDescriptor, key: str, *, repo_root: str | Path = ".") -> Dict:
        """
        Archive the declared paths under `key`. Returns the manifest.

        The archive is built in a temp file and renamed into place, so readers
        never see a partial artifact and concurrent writers to the same key
        do not interleave.
        """
        root = Path(repo_root).resolve()
        files: List[Tuple[str, Path]] = []
        for idx, prefix in enumerate(descriptor.paths):
            src = _resolve_prefix(prefix, root)
            if src.is_file():
                files.append((f"{_WHOLE_FILE_PREFIX}{idx}", src))
            elif src.is_dir():
                for f in _iter_files_under(src):
                    rel = _relpath(f, src)
                    if _excluded(rel) or self.root in f.resolve().parents:
                        continue
                    files.append((f"{idx}/{rel}", f))

        manifest = {
            "key": key,
            "paths": list(descriptor.paths),
            "hash_files": list(descriptor.hash_files),
            "files": len(files),
            "saved_at_unix": int(time.time()),
        }

        with self._lock(key):
            tmp_name = None
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=self.root, suffix=".tmp")
                with os.fdopen(fd, "wb") as fh, tarfile.open(fileobj=fh, mode="w:gz") as tar:
                    for arcname, path in files:
                        tar.add(str(path), arcname=arcname, recursive=False)
                    payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                    info = tarfile.TarInfo(name="manifest.json")
                    info.size = len(payload)
                    info.mtime = manifest["saved_at_unix"]
                    tar.addfile(info, fileobj=io.BytesIO(payload))

                os.replace(tmp_name, self.artifact_path(key))
                tmp_name = None
                self.manifest_path(key).write_text(
                    json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8"
                )
            except (OSError, tarfile.TarError) as e:
                raise CacheIOError(f"save of {key!r} failed: {e}") from e
            finally:
                if tmp_name is not None:
                    Path(tmp_name).unlink(missing_ok=True)

        logger.debug("saved %d file(s) under %s", len(files), key)
        return manifest

    def load_manifest(self, key: str) -> Dict:
        try:
            return json.loads(self.manifest_path(key).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise CacheIOError(f"manifest for {key!r} unreadable: {e}") from e

    def prune(self, keep: int = 5) -> List[str]:
        """
        Keep only the newest N artifacts. Uses file mtime as "newest".
        Returns the artifact file names removed.
        """
        if not self.root.exists():
            return []
        tars = sorted(self.root.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        removed: List[str] = []
        for p in tars[max(keep, 0):]:
            stem = p.name[: -len(".tar.gz")]
            with self._lock(stem):
                p.unlink(missing_ok=True)
                (self.root / f"{stem}.manifest.json").unlink(missing_ok=True)
            removed.append(p.name)
        return removed
