"""
Radar Crawler

Bounded, polite crawler that collects pages from monitored sources for
downstream classification.
"""

__version__ = "1.0.0"
__description__ = "Per-source crawl jobs with robots.txt compliance, extraction and deduplication"
