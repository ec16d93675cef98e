"""
Incremental validation cache.

Stores a content fingerprint per watched file and the last outcome per
pipeline stage, so a stage can be skipped when it passed last time and none of
its inputs changed.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from hugo_validator.config import ValidatorConfig

logger = logging.getLogger(__name__)

CACHE_VERSION = 1

STAGES: Tuple[str, ...] = ("hugo", "css", "html", "tests")

PASSED = "passed"
FAILED = "failed"

# Discovery bounds. Files beyond the caps are not observed at all.
MAX_FILES_PER_PATTERN = 500
MAX_FILES_PER_STAGE = 100

HUGO_PATTERNS: Tuple[str, ...] = (
    "hugo.toml", "hugo.yaml", "hugo.json",
    "config.toml", "config.yaml", "config.json",
    "content/**/*",
    "layouts/**/*",
    "assets/**/*",
    "static/**/*",
    "themes/*/layouts/**/*",
    "themes/*/assets/**/*",
)

TEMPLATE_PATTERNS: Tuple[str, ...] = (
    "layouts/**/*.html",
    "themes/*/layouts/**/*.html",
)


def utc_now_iso() -> str:
    """Return current UTC time in ISO format."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class CacheRecord:
    """Persisted state for one project, loaded once and saved once per run."""
    stage_outcomes: Dict[str, str] = field(default_factory=dict)
    stage_file_fingerprints: Dict[str, Dict[str, str]] = field(default_factory=dict)
    last_run: Optional[str] = None

    def touch(self) -> None:
        self.last_run = utc_now_iso()

    def to_json_dict(self) -> Dict[str, Any]:
        return {
            "version": CACHE_VERSION,
            "tests": dict(self.stage_outcomes),
            "fileHashes": {stage: dict(fps) for stage, fps in self.stage_file_fingerprints.items()},
            "lastRun": self.last_run,
        }

    @classmethod
    def from_json_dict(cls, data: Any) -> Optional["CacheRecord"]:
        """Validate a decoded cache document. Returns None on any mismatch."""
        if not isinstance(data, dict) or data.get("version") != CACHE_VERSION:
            return None

        outcomes = data.get("tests")
        hashes = data.get("fileHashes")
        last_run = data.get("lastRun")

        if not isinstance(outcomes, dict) or not isinstance(hashes, dict):
            return None
        if last_run is not None and not isinstance(last_run, str):
            return None
        if not all(isinstance(k, str) and v in (PASSED, FAILED) for k, v in outcomes.items()):
            return None

        fingerprints: Dict[str, Dict[str, str]] = {}
        for stage, fps in hashes.items():
            if not isinstance(fps, dict):
                return None
            if not all(isinstance(p, str) and isinstance(h, str) for p, h in fps.items()):
                return None
            fingerprints[str(stage)] = dict(fps)

        return cls(stage_outcomes=dict(outcomes), stage_file_fingerprints=fingerprints, last_run=last_run)


@dataclass(slots=True)
class SkipDecision:
    """Answer to "may this stage be skipped?" plus the fresh fingerprints."""
    skip: bool
    reason: str
    fingerprints: Dict[str, str]


def load_cache(path: Union[str, Path]) -> CacheRecord:
    """Read the cache file. Any problem yields an empty record."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return CacheRecord()
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable cache %s: %s", path, e)
        return CacheRecord()

    record = CacheRecord.from_json_dict(data)
    if record is None:
        logger.warning("Ignoring cache %s: unexpected format", path)
        return CacheRecord()
    return record


def save_cache(record: CacheRecord, path: Union[str, Path]) -> bool:
    """Write the cache file. Failures are logged and reported as False."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(record.to_json_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    except (OSError, TypeError, ValueError) as e:
        logger.warning("Could not save cache %s: %s", path, e)
        return False
    return True


def stage_patterns(stage: str, config: ValidatorConfig) -> List[str]:
    """Glob patterns (relative to the site root) whose files feed ``stage``."""
    if stage == "hugo":
        return list(HUGO_PATTERNS)
    if stage == "css":
        return [config.css_pattern]
    if stage == "html":
        return [config.html_validation.pattern, *TEMPLATE_PATTERNS]
    if stage == "tests":
        return ["tests/**/*", config.html_validation.pattern]
    raise ValueError(f"Unknown stage: {stage}. Valid stages: {', '.join(STAGES)}")


def _relative_pattern(pattern: str, root: Path) -> str:
    """
    Express ``pattern`` relative to ``root``.

    Raises:
        ValueError: for an empty pattern or an absolute one outside ``root``.
    """
    if not pattern:
        raise ValueError("empty glob pattern")
    if not Path(pattern).is_absolute():
        return pattern
    for base in (root, root.resolve()):
        try:
            return Path(pattern).relative_to(base).as_posix()
        except ValueError:
            continue
    raise ValueError(f"pattern {pattern!r} is outside {root}")


def _is_excluded(rel_path: str, exclude: Optional[Iterable[str]]) -> bool:
    if not exclude:
        return False
    return any(fnmatchcase(rel_path, pattern) for pattern in exclude)


def discover_stage_files(stage: str, config: ValidatorConfig, root: Union[str, Path] = ".") -> List[str]:
    """
    List the files watched for ``stage``.

    Absolute patterns are taken relative to ``root``. Each pattern
    contributes at most ``MAX_FILES_PER_PATTERN`` candidates and the stage at
    most ``MAX_FILES_PER_STAGE`` files. Paths are POSIX-style, relative to
    ``root`` and sorted.

    Raises:
        ValueError: for a pattern that cannot be globbed under ``root``.
    """
    root = Path(root)
    exclude = None
    if stage == "html" and config.html_validation.exclude:
        exclude = [_relative_pattern(p, root) for p in config.html_validation.exclude]
    found: set[str] = set()

    for pattern in stage_patterns(stage, config):
        candidates = 0
        for path in sorted(root.glob(_relative_pattern(pattern, root))):
            if candidates >= MAX_FILES_PER_PATTERN:
                break
            candidates += 1
            if not path.is_file():
                continue
            rel_path = path.relative_to(root).as_posix()
            if _is_excluded(rel_path, exclude):
                continue
            found.add(rel_path)

    return sorted(found)[:MAX_FILES_PER_STAGE]


def fingerprint_file(path: Union[str, Path]) -> str:
    """128-bit content digest. Used for change detection only."""
    h = hashlib.md5(usedforsecurity=False)
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def compute_fingerprints(
    paths: Iterable[str],
    root: Union[str, Path] = ".",
) -> Tuple[Dict[str, str], List[str]]:
    """Return ({path: digest}, [unreadable paths])."""
    root = Path(root)
    fingerprints: Dict[str, str] = {}
    unreadable: List[str] = []
    for rel_path in paths:
        try:
            fingerprints[rel_path] = fingerprint_file(root / rel_path)
        except OSError as e:
            logger.debug("Could not fingerprint %s: %s", rel_path, e)
            unreadable.append(rel_path)
    return fingerprints, unreadable


def _describe_change(previous: Dict[str, str], current: Dict[str, str]) -> Optional[str]:
    for path, digest in current.items():
        cached = previous.get(path)
        if cached is None:
            return f"new file: {path}"
        if cached != digest:
            return f"changed: {path}"
    for path in previous:
        if path not in current:
            return f"deleted: {path}"
    return None


def should_skip(
    stage: str,
    config: ValidatorConfig,
    record: CacheRecord,
    root: Union[str, Path] = ".",
) -> SkipDecision:
    """
    Decide whether ``stage`` can be skipped.

    A stage is skipped only when its last outcome was "passed" and every
    watched file still has its cached digest, with nothing added or removed.
    Anything that cannot be verified means the stage runs.
    """
    try:
        paths = discover_stage_files(stage, config, root)
        fingerprints, unreadable = compute_fingerprints(paths, root)
    except (OSError, ValueError, NotImplementedError) as e:
        logger.warning("File discovery failed for %s: %s", stage, e)
        return SkipDecision(skip=False, reason=f"file discovery failed: {e}", fingerprints={})

    outcome = record.stage_outcomes.get(stage)
    if outcome != PASSED:
        reason = "no previous run" if outcome is None else f"previous run {outcome}"
        return SkipDecision(skip=False, reason=reason, fingerprints=fingerprints)

    if unreadable:
        return SkipDecision(skip=False, reason=f"unreadable: {unreadable[0]}", fingerprints=fingerprints)

    previous = record.stage_file_fingerprints.get(stage, {})
    change = _describe_change(previous, fingerprints)
    if change is not None:
        return SkipDecision(skip=False, reason=change, fingerprints=fingerprints)

    return SkipDecision(skip=True, reason="unchanged since last pass", fingerprints=fingerprints)


def record_stage_result(
    record: CacheRecord,
    stage: str,
    passed: bool,
    fingerprints: Dict[str, str],
) -> None:
    """Store the outcome and fingerprints of a stage that actually ran."""
    record.stage_outcomes[stage] = PASSED if passed else FAILED
    record.stage_file_fingerprints[stage] = dict(fingerprints)
