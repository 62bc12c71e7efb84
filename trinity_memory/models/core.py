"""
Core data models for the conversation memory system.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

MESSAGE_ROLES = ('user', 'assistant')
INTENT_TYPES = ('semantic', 'structured', 'hybrid')
AGGREGATIONS = ('count', 'sum', 'average', 'group_by')


@dataclass
class Message:
    """A single conversation turn as supplied by the caller."""
    role: str  # user | assistant
    content: str
    timestamp: Optional[datetime] = None


@dataclass
class DateRange:
    """Inclusive creation-time bounds; either side may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class IntentFilters:
    file_type: Optional[str] = None
    tags: Optional[List[str]] = None
    date_range: Optional[DateRange] = None
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class Intent:
    """Classified shape of a search query."""
    type: str  # semantic | structured | hybrid
    query: Optional[str] = None
    filters: IntentFilters = field(default_factory=IntentFilters)
    aggregation: Optional[str] = None
    group_by: Optional[str] = None


@dataclass
class SearchOptions:
    limit: int = 10
    offset: int = 0
    file_types: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    date_range: Optional[DateRange] = None


@dataclass
class SearchResult:
    """One file returned by a search or a direct path lookup."""
    id: str
    path: str
    file_name: str
    file_type: str
    content: str
    metadata: Dict[str, Any]
    tags: List[str]
    summary: Optional[str]
    created_at: datetime
    score: float
    relevant_section: Optional[str] = None


@dataclass
class FileInfo:
    """Directory entry or stat result from the file share."""
    path: str
    size: int
    modified: datetime
    is_directory: bool


@dataclass
class FileMetadata:
    """Metadata extracted from a file before it is registered in the catalog."""
    checksum: str
    size: int
    type: str
    title: str = ''
    summary: str = ''
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    conversation_id: Optional[str] = None


@dataclass
class VectorEntry:
    """A chunk of file content ready to be written to the vector index."""
    id: str
    embedding: List[float]
    content: str
    metadata: Dict[str, Any]


@dataclass
class VectorHit:
    """A chunk returned by similarity search."""
    id: str
    score: float
    content: str
    metadata: Dict[str, Any]


@dataclass
class IndexSummary:
    """Outcome of a directory sync."""
    indexed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


@dataclass
class ConversationAnalysis:
    """Model-derived insights stored in a conversation's metadata."""
    summary: str = ''
    topics: List[str] = field(default_factory=list)
    sentiment: str = 'neutral'
    key_points: List[str] = field(default_factory=list)
    action_items: List[str] = field(default_factory=list)
    follow_up_questions: List[str] = field(default_factory=list)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            'topics': self.topics,
            'sentiment': self.sentiment,
            'keyPoints': self.key_points,
            'actionItems': self.action_items,
            'followUpQuestions': self.follow_up_questions,
        }


@dataclass
class SaveConversationResult:
    conversation_id: str
    file_path: str
    indexed: bool
    message_count: int
    triggered_actions: List[str] = field(default_factory=list)
