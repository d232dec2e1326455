"""
Web crawler core components.
"""

from .url_frontier import URLFrontier, FrontierEntry, FrontierError, LinkScope, canonicalize_url
from .robots import RobotsPolicy, RobotsRuleSet
from .rate_limiter import DomainRateLimiter
from .fetcher import WebFetcher, FetchResult, FetchError
from .extractor import ContentExtractor, PageContent, ExtractionError

__all__ = [
    'URLFrontier', 'FrontierEntry', 'FrontierError', 'LinkScope', 'canonicalize_url',
    'RobotsPolicy', 'RobotsRuleSet',
    'DomainRateLimiter',
    'WebFetcher', 'FetchResult', 'FetchError',
    'ContentExtractor', 'PageContent', 'ExtractionError'
]
