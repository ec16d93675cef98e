"""
Pipeline driver: runs the validation stages, skipping those the change cache
says are up to date.
"""
from __future__ import annotations

import logging
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from hugo_validator.cache import (
    STAGES,
    load_cache,
    record_stage_result,
    save_cache,
    should_skip,
)
from hugo_validator.config import ValidatorConfig
from hugo_validator.core import crawl_external_links, crawl_internal_links, format_broken_links

logger = logging.getLogger(__name__)

STATUS_PASSED = "passed"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass(slots=True)
class StageResult:
    status: str
    log: str = ""

    @property
    def ran(self) -> bool:
        return self.status != STATUS_SKIPPED


@dataclass(slots=True)
class PipelineResult:
    results: Dict[str, StageResult] = field(default_factory=dict)
    failed: bool = False

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


StageRunner = Callable[[ValidatorConfig, Path], StageResult]


def run_command(cmd: Sequence[str], cwd: Path) -> StageResult:
    """Run an external tool; exit code 0 means the stage passed."""
    try:
        proc = subprocess.run(list(cmd), cwd=cwd, capture_output=True, text=True, check=False)
    except OSError as e:
        return StageResult(status=STATUS_FAILED, log=f"Could not run {cmd[0]}: {e}")

    output = (proc.stdout or "") + (proc.stderr or "")
    status = STATUS_PASSED if proc.returncode == 0 else STATUS_FAILED
    return StageResult(status=status, log=output)


def run_hugo_build(config: ValidatorConfig, root: Path) -> StageResult:
    return run_command(["hugo", "--panicOnWarning"], root)


def run_css_validation(config: ValidatorConfig, root: Path) -> StageResult:
    return run_command(["npx", "stylelint", "--formatter", "verbose", config.css_pattern], root)


def run_html_validation(config: ValidatorConfig, root: Path) -> StageResult:
    return run_command(["npx", "html-validate", "--formatter", "stylish", "public"], root)


def run_link_checks(config: ValidatorConfig, root: Path) -> StageResult:
    """
    Crawl the test server. Broken internal links fail the stage; broken
    external links are only reported.
    """
    base_url = config.test_base_url
    lines: List[str] = []

    internal = crawl_internal_links(base_url)
    lines.append(f"Checked {internal.visited_count} internal pages")
    if internal.broken_links:
        lines.append(f"Broken internal links:\n{format_broken_links(internal.broken_links)}")

    external = crawl_external_links(base_url, config)
    for skipped in external.skipped_links:
        lines.append(f"Skipped {skipped.url} ({skipped.reason})")
    lines.append(f"Checked {external.checked_count} external links, {len(external.broken_links)} broken")
    if external.broken_links:
        lines.append(f"Broken external links:\n{format_broken_links(external.broken_links)}")

    status = STATUS_PASSED if internal.passed else STATUS_FAILED
    return StageResult(status=status, log="\n".join(lines))


DEFAULT_RUNNERS: Dict[str, StageRunner] = {
    "hugo": run_hugo_build,
    "css": run_css_validation,
    "html": run_html_validation,
    "tests": run_link_checks,
}


def run_pipeline(
    config: ValidatorConfig,
    root: Union[str, Path] = ".",
    runners: Optional[Mapping[str, StageRunner]] = None,
    only: Optional[str] = None,
    use_cache: bool = True,
) -> PipelineResult:
    """
    Run the requested stages in order.

    The cache is read once before the first stage and written once after the
    last. Only stages that actually ran update their cache entry.

    Raises:
        ValueError: if ``only`` names an unknown stage.
    """
    root = Path(root)
    runners = runners or DEFAULT_RUNNERS
    if only is not None and only not in STAGES:
        raise ValueError(f"Unknown stage: {only}. Valid stages: {', '.join(STAGES)}")
    stages = [only] if only else list(STAGES)

    cache_path = root / config.cache_file
    record = load_cache(cache_path)
    result = PipelineResult()

    for stage in stages:
        decision = should_skip(stage, config, record, root)
        if use_cache and decision.skip:
            sys.stderr.write(f"⏭  {stage}: skipped ({decision.reason})\n")
            result.results[stage] = StageResult(status=STATUS_SKIPPED, log=decision.reason)
            continue

        logger.debug("Running %s: %s", stage, decision.reason)
        stage_result = runners[stage](config, root)
        result.results[stage] = stage_result

        passed = stage_result.status == STATUS_PASSED
        # fingerprints are taken before the stage runs
        record_stage_result(record, stage, passed, decision.fingerprints)
        if not passed:
            result.failed = True
        sys.stderr.write(f"{'✅' if passed else '❌'} {stage}\n")

    record.touch()
    save_cache(record, cache_path)
    return result
