"""
Validation pipeline for Hugo sites with an incremental change cache and a
BFS link crawler.
"""
from hugo_validator.cache import CacheRecord, SkipDecision, load_cache, save_cache, should_skip
from hugo_validator.config import ValidatorConfig, load_config, merge_config
from hugo_validator.core import crawl_external_links, crawl_internal_links, LinkResult, SkippedLink

__version__ = "1.0.0"
__all__ = [
    "CacheRecord",
    "SkipDecision",
    "load_cache",
    "save_cache",
    "should_skip",
    "ValidatorConfig",
    "load_config",
    "merge_config",
    "crawl_external_links",
    "crawl_internal_links",
    "LinkResult",
    "SkippedLink",
]
