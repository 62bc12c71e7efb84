"""
File type classification and per-type metadata extraction.

Classification runs an ordered tuple of pure predicates and returns the first
type any of them reports. Each predicate sees the file path and the content
parsed as JSON (None when the content is not JSON).
"""

import posixpath
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.core import FileMetadata
from ..utils.json_utils import try_parse_json
from ..utils.timestamp_utils import parse_timestamp

Classifier = Callable[[str, Any], Optional[str]]

# Checked in order; '/agents/proposals/' resolves to proposal before agent
PATH_SEGMENTS = (
    ('/conversations/', 'conversation'),
    ('/summaries/', 'summary'),
    ('/proposals/', 'proposal'),
    ('/agents/', 'agent'),
)

EXTENSION_TYPES = {
    '.json': 'json',
    '.md': 'markdown',
    '.txt': 'text',
}

PREVIEW_CHARS = 200


def classify_by_path(path: str, data: Any) -> Optional[str]:
    for segment, file_type in PATH_SEGMENTS:
        if segment in path:
            return file_type
    return None


def classify_by_structure(path: str, data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    if isinstance(data.get('messages'), list):
        return 'conversation'
    if data.get('proposal') or data.get('content'):
        return 'proposal'
    return None


def classify_by_extension(path: str, data: Any) -> Optional[str]:
    return EXTENSION_TYPES.get(posixpath.splitext(path)[1].lower(), 'unknown')


CLASSIFIERS: Tuple[Classifier, ...] = (classify_by_path, classify_by_structure, classify_by_extension)


def classify_file(path: str, content: str, data: Any = None) -> str:
    """Return the type reported by the first classifier that recognizes the file."""
    if data is None:
        data = try_parse_json(content)
    for classifier in CLASSIFIERS:
        file_type = classifier(path, data)
        if file_type:
            return file_type
    return 'unknown'


def _preview(content: str, limit: int = PREVIEW_CHARS) -> str:
    return content if len(content) <= limit else content[:limit] + '...'


def _dict_messages(messages: Any) -> List[Dict[str, Any]]:
    return [m for m in messages if isinstance(m, dict)] if isinstance(messages, list) else []


def _string_tags(tags: Any) -> List[str]:
    return [tag for tag in tags if isinstance(tag, str)] if isinstance(tags, list) else []


def conversation_preview(messages: List[Dict[str, Any]]) -> str:
    """Deterministic summary of a transcript: message count plus the opening of the first five turns."""
    messages = _dict_messages(messages)
    if not messages:
        return 'Empty conversation'
    preview = ' '.join(f"{m.get('role', 'unknown')}: {str(m.get('content', ''))[:50]}..." for m in messages[:5])
    return f'Conversation with {len(messages)} messages. Preview: {preview}'


def extract_conversation_metadata(path: str, content: str, data: Any, metadata: FileMetadata) -> FileMetadata:
    if not isinstance(data, dict):
        metadata.title = posixpath.basename(path)
        metadata.summary = _preview(content)
        return metadata

    messages = _dict_messages(data.get('messages'))
    timestamp = parse_timestamp(data.get('timestamp'))
    metadata.title = f'Conversation from {timestamp.date().isoformat()}' if timestamp else 'Conversation'
    summary = data.get('summary')
    metadata.summary = summary if isinstance(summary, str) and summary else conversation_preview(messages)
    metadata.tags = _string_tags(data.get('tags'))
    metadata.metadata = {
        'messageCount': len(messages),
        'userId': data.get('userId'),
        'timestamp': data.get('timestamp'),
    }
    if isinstance(data.get('conversationId'), str) and data['conversationId'] and not metadata.conversation_id:
        metadata.conversation_id = data['conversationId']
    return metadata


def extract_summary_metadata(path: str, content: str, data: Any, metadata: FileMetadata) -> FileMetadata:
    first_line = content.split('\n', 1)[0]
    metadata.title = re.sub(r'^#+\s*', '', first_line).strip() if first_line.startswith('#') else 'Summary'
    metadata.summary = content[:PREVIEW_CHARS]
    metadata.tags = ['summary']
    return metadata


def extract_proposal_metadata(path: str, content: str, data: Any, metadata: FileMetadata) -> FileMetadata:
    if isinstance(data, dict):
        metadata.title = data.get('title') or 'Proposal'
        metadata.summary = data.get('summary') or content[:PREVIEW_CHARS]
        metadata.tags = ['proposal'] + [tag for tag in _string_tags(data.get('tags')) if tag != 'proposal']
        metadata.metadata = {'jobId': data.get('jobId'), 'status': data.get('status')}
        return metadata

    # Markdown or plain-text proposal
    first_line = content.split('\n', 1)[0]
    metadata.title = re.sub(r'^#+\s*', '', first_line).strip() if first_line.startswith('#') else 'Proposal'
    metadata.summary = content[:PREVIEW_CHARS]
    metadata.tags = ['proposal']
    return metadata


def extract_default_metadata(path: str, content: str, data: Any, metadata: FileMetadata) -> FileMetadata:
    metadata.title = posixpath.basename(path)
    metadata.summary = _preview(content)
    return metadata


METADATA_EXTRACTORS = {
    'conversation': extract_conversation_metadata,
    'summary': extract_summary_metadata,
    'proposal': extract_proposal_metadata,
}


def extract_file_metadata(path: str, content: str, checksum: str, size: int) -> Tuple[FileMetadata, Any]:
    """
    Classify a file and extract its type-specific metadata.

    Returns:
        Tuple of (FileMetadata, content parsed as JSON or None)
    """
    data = try_parse_json(content)
    file_type = classify_file(path, content, data)
    metadata = FileMetadata(checksum=checksum, size=size, type=file_type)
    extractor = METADATA_EXTRACTORS.get(file_type, extract_default_metadata)
    return extractor(path, content, data, metadata), data


def embeddable_text(file_type: str, content: str, data: Any) -> str:
    """Text handed to the chunker: transcripts become ``role: content`` lines, anything else is used as is."""
    if file_type == 'conversation' and isinstance(data, dict) and isinstance(data.get('messages'), list):
        lines = [
            f"{message.get('role', 'unknown')}: {message.get('content', '')}" for message in data['messages']
            if isinstance(message, dict)
        ]
        return '\n'.join(lines)
    return content
