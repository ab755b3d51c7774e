"""Configuration constants.

This module contains truly constant values that should NOT be user-configurable.
These are algorithm parameters and protocol details.

For configurable values, see models.py (ModelConfig, VectorIndexConfig, etc.).
"""

# =============================================================================
# Eviction Cache
# =============================================================================

CACHE_DEFAULT_CAPACITY = 100
"""Capacity used when a non-positive capacity is requested."""

CACHE_EVICTION_WINDOW = 5
"""Number of least-recently-used entries scored on eviction."""

TOKEN_CACHE_MAX = 200
"""Upper bound for the tokenization memo."""

# =============================================================================
# Chunking
# =============================================================================

TITLE_MIN_LENGTH = 5
"""Titles must be longer than this to become a chunk."""

SENTENCE_MIN_LENGTH = 15
"""Sentences must be longer than this to survive splitting."""

AGGRESSIVE_SPLIT_MIN_SENTENCES = 3
"""Fewer sentences than this triggers the aggressive splitter..."""

AGGRESSIVE_SPLIT_MIN_CHARS = 500
"""...when the content is also longer than this."""

WINDOW_OVERLAP_WORDS = 5
"""Word overlap between fixed windows cut from one long sentence."""

FALLBACK_WINDOW_WORDS = 150
"""Window size for paragraph and plain-word fallbacks."""

# =============================================================================
# Engine
# =============================================================================

LONG_INPUT_FACTOR = 5
"""Texts longer than max_length * factor characters log a warning."""

SIMILARITY_TOLERANCE = 1e-5
"""Max disagreement between accelerated and portable similarity."""

WARMUP_TEXTS = (
    "Hello",
    "A short warmup sentence.",
    "A somewhat longer paragraph used to exercise padding and the attention mask "
    "on the first inference call so later calls run at steady-state speed.",
)

# =============================================================================
# Vector Index
# =============================================================================

CAPACITY_EVICT_FRACTION = 0.2
"""Fraction of capacity evicted when the index is full."""

INDEX_OVERHEAD_FRACTION = 0.3
"""Graph overhead relative to raw vector bytes, for size estimates."""

INDEX_OVERHEAD_PER_ELEMENT = 64
"""Fixed per-element graph overhead in bytes, for size estimates."""

MAPPING_FORMAT_VERSION = 1
"""Version of the persisted mapping JSON."""

# =============================================================================
# Content Indexer
# =============================================================================

EXCLUDED_URL_PREFIXES = (
    "chrome://",
    "chrome-extension://",
    "edge://",
    "about:",
    "moz-extension://",
    "file://",
)
"""Internal/privileged locations that are never indexed."""

SNIPPET_MAX_LENGTH = 200
"""Max characters in a search result snippet."""

SNIPPET_SENTENCE_CUT = 0.7
"""Cut at a sentence end only if it lies past this fraction of the limit."""

SNIPPET_WORD_CUT = 0.8
"""Cut at a word boundary only if it lies past this fraction of the limit."""

SEARCH_DEFAULT_TOP_K = 10
"""Default number of search results."""

SEARCH_MAX_TOP_K = 100
"""Hard cap on requested search results."""
