"""
Query Parser routing free-text queries to semantic, structured or hybrid search.

Deterministic patterns are tried first in a fixed priority order; queries no
pattern recognizes go to a model-based extraction that is bounded by a timeout
and fails open to semantic search.
"""

import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..models.core import AGGREGATIONS, INTENT_TYPES, DateRange, Intent, IntentFilters
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import SearchConfig
from ..utils.errors import ValidationError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import day_bounds, months_before, parse_timestamp, utc_now

logger = get_logger(__name__)

TAG_PATTERN = re.compile(r'tagged?\s+(?:as|with)\s+"([^"]+)"', re.IGNORECASE)

SEMANTIC_INDICATORS = ('about', 'regarding', 'related to', 'concerning', 'discuss', 'mention', 'talk about', 'similar to')
SEMANTIC_PATTERN = re.compile(r'\b(?:' + '|'.join(re.escape(i) for i in SEMANTIC_INDICATORS) + ')', re.IGNORECASE)

EXPLICIT_DATE_PATTERN = re.compile(r'\b(\d{4})-(\d{2})-(\d{2})\b')
RELATIVE_DATE_PATTERN = re.compile(r'\blast\s+(\d+)\s+(day|week|month)s?\b', re.IGNORECASE)

FILE_TYPE_PATTERNS = (
    (re.compile(r'\b(?:all|get|show|find|list)\s+conversations?\b', re.IGNORECASE), 'conversation'),
    (re.compile(r'\b(?:all|get|show|find|list)\s+summar(?:y|ies)\b', re.IGNORECASE), 'summary'),
    (re.compile(r'\b(?:all|get|show|find|list)\s+proposals?\b', re.IGNORECASE), 'proposal'),
)

AGGREGATION_PATTERN = re.compile(r'\bcount\b|\bhow\s+many\b', re.IGNORECASE)

_RELATIVE_UNITS = {
    'day': lambda now, n: now - timedelta(days=n),
    'week': lambda now, n: now - timedelta(weeks=n),
    'month': months_before,
}

CLASSIFY_SYSTEM_PROMPT = """
You are a query parser for a conversation memory system.
Parse the user's natural language query into a structured search intent.

Determine the query type:
- semantic: For finding similar content, concepts, or topics
- structured: For exact filters, dates, counts, specific file types
- hybrid: For combining semantic search with filters

Extract any filters mentioned:
- fileType: 'conversation', 'summary', 'proposal', etc.
- tags: Array of tag names
- dateRange: Start and end dates in ISO format
- conversationId: Specific conversation ID if mentioned

Return a JSON object with this exact format:
```json
{
  "type": "semantic|structured|hybrid",
  "query": "text to search by meaning (semantic and hybrid only)",
  "filters": {
    "fileType": "conversation",
    "tags": ["tag"],
    "dateRange": {"start": "2025-01-01T00:00:00", "end": "2025-01-31T23:59:59"},
    "conversationId": "id"
  },
  "aggregation": "count|sum|average|group_by",
  "groupBy": "field name"
}
```
Omit every field that does not apply.

Examples:
- "Find conversations about machine learning" -> semantic
- "Get all conversations from January 15th" -> structured with date filter
- "Show conversations about AI from last week" -> hybrid with semantic + date
- "Count proposals per job category" -> structured with aggregation"""


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{key} must be a string')
    return value or None


def _parse_bound(value: Any, key: str) -> Optional[datetime]:
    if value in (None, ''):
        return None
    parsed = parse_timestamp(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValidationError(f'dateRange.{key} is not an ISO timestamp: {value!r}')
    return parsed


def intent_from_dict(data: Any, raw_query: str) -> Intent:
    """
    Validate a model answer against the Intent shape.

    Args:
        data: Parsed JSON answer
        raw_query: Original query text, used when a semantic or hybrid answer omits its query

    Returns:
        Intent

    Raises:
        ValidationError: If the answer does not have the Intent shape
    """
    if not isinstance(data, dict):
        raise ValidationError('intent must be an object')

    intent_type = data.get('type')
    if intent_type not in INTENT_TYPES:
        raise ValidationError(f'unknown intent type: {intent_type!r}')

    aggregation = _optional_str(data, 'aggregation')
    if aggregation is not None and aggregation not in AGGREGATIONS:
        raise ValidationError(f'unknown aggregation: {aggregation!r}')

    raw_filters = data.get('filters') or {}
    if not isinstance(raw_filters, dict):
        raise ValidationError('filters must be an object')

    tags = raw_filters.get('tags')
    if tags is not None and (not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)):
        raise ValidationError('filters.tags must be a list of strings')

    date_range = None
    raw_range = raw_filters.get('dateRange')
    if raw_range is not None:
        if not isinstance(raw_range, dict):
            raise ValidationError('filters.dateRange must be an object')
        start, end = _parse_bound(raw_range.get('start'), 'start'), _parse_bound(raw_range.get('end'), 'end')
        if start or end:
            date_range = DateRange(start=start, end=end)

    filters = IntentFilters(file_type=_optional_str(raw_filters, 'fileType'),
                            tags=tags or None,
                            date_range=date_range,
                            conversation_id=_optional_str(raw_filters, 'conversationId'),
                            user_id=_optional_str(raw_filters, 'userId'))

    query = _optional_str(data, 'query')
    if intent_type in ('semantic', 'hybrid') and not query:
        query = raw_query

    return Intent(type=intent_type,
                  query=query,
                  filters=filters,
                  aggregation=aggregation,
                  group_by=_optional_str(data, 'groupBy'))


class QueryParser:
    """Classify search queries into intents."""

    def __init__(self,
                 llm: Optional[BedrockLLM],
                 config: SearchConfig,
                 clock: Callable[[], datetime] = utc_now):
        """
        Initialize the query parser.

        Args:
            llm: Model client for queries no pattern recognizes (None disables the model step)
            config: SearchConfig with the classification timeout
            clock: Source of the current time for relative dates
        """
        self.llm = llm
        self.timeout = config.classify_timeout
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='query-parser')

        logger.info('Initialized QueryParser')

    def parse_query(self, text: str) -> Intent:
        """
        Classify a query. Never raises; anything unrecognized fails open to semantic.

        Args:
            text: Natural-language query

        Returns:
            Intent
        """
        logger.info(f'Parsing query: "{text}"')

        if not text or not text.strip():
            return Intent(type='semantic', query=text)

        intent = self.parse_with_patterns(text)
        if intent is not None:
            logger.debug(f'Query matched pattern rules: {intent.type}')
            return intent

        return self.parse_with_model(text)

    def parse_with_patterns(self, text: str) -> Optional[Intent]:
        """Apply the deterministic rules in priority order; first match wins."""
        tag_match = TAG_PATTERN.search(text)
        if tag_match:
            return Intent(type='structured', filters=IntentFilters(tags=[tag_match.group(1)]))

        if SEMANTIC_PATTERN.search(text):
            return Intent(type='semantic', query=text)

        for match in EXPLICIT_DATE_PATTERN.finditer(text):
            try:
                day = date(*(int(part) for part in match.groups()))
            except ValueError:
                # Not a calendar date (e.g. 2025-02-30)
                continue
            start, end = day_bounds(day)
            return Intent(type='structured', filters=IntentFilters(date_range=DateRange(start=start, end=end)))

        relative_match = RELATIVE_DATE_PATTERN.search(text)
        if relative_match:
            amount, unit = int(relative_match.group(1)), relative_match.group(2).lower()
            now = self.clock()
            return Intent(type='structured',
                          filters=IntentFilters(date_range=DateRange(start=_RELATIVE_UNITS[unit](now, amount), end=now)))

        for pattern, file_type in FILE_TYPE_PATTERNS:
            if pattern.search(text):
                return Intent(type='structured', filters=IntentFilters(file_type=file_type))

        if AGGREGATION_PATTERN.search(text):
            return Intent(type='structured', aggregation='count')

        return None

    def parse_with_model(self, text: str) -> Intent:
        """Model-based extraction bounded by the classification timeout; fails open to semantic."""
        fallback = Intent(type='semantic', query=text)
        if self.llm is None:
            return fallback

        future = self._executor.submit(self.llm.extract_json, f'Parse this query:\n{text}', CLASSIFY_SYSTEM_PROMPT, 512)
        try:
            intent = intent_from_dict(future.result(timeout=self.timeout), text)
            logger.debug(f'Model classified query as {intent.type}')
            return intent
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f'Query classification timed out after {self.timeout}s, falling back to semantic search')
        except ValidationError as e:
            logger.warning(f'Model returned an invalid intent ({e}), falling back to semantic search')
        except Exception as e:
            logger.warning(f'Query classification failed ({e}), falling back to semantic search')
        return fallback

    def close(self) -> None:
        self._executor.shutdown(wait=False)
