"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .bootstrap import MemorySystem, build_memory_system
from .models.core import DateRange, SearchOptions, SearchResult
from .utils.config import config
from .utils.errors import TrinityMemoryError, ValidationError
from .utils.health_check import get_health_status, get_system_info
from .utils.logging_config import get_logger
from .utils.timestamp_utils import parse_timestamp, to_iso

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Trinity Memory')
_system: Optional[MemorySystem] = None


def get_system() -> MemorySystem:
    global _system
    if _system is None:
        _system = build_memory_system(config)
    return _system


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def conversation_to_dict(conversation) -> Dict[str, Any]:
    return _plain({
        'id': conversation.id,
        'userId': conversation.user_id,
        'sessionId': conversation.session_id,
        'messageCount': conversation.message_count,
        'totalTokens': conversation.total_tokens,
        'status': conversation.status,
        'summary': conversation.summary,
        'tags': conversation.tags,
        'metadata': conversation.metadata_ or {},
        'startedAt': conversation.started_at,
        'endedAt': conversation.ended_at,
    })


def file_to_dict(record) -> Dict[str, Any]:
    return _plain({
        'id': record.id,
        'path': record.file_path,
        'fileName': record.file_name,
        'fileType': record.file_type,
        'size': record.file_size,
        'checksum': record.checksum,
        'title': record.title,
        'summary': record.summary,
        'tags': record.tags,
        'metadata': record.metadata_ or {},
        'conversationId': record.conversation_id,
        'createdAt': record.created_at,
        'indexedAt': record.indexed_at,
    })


def rule_to_dict(rule) -> Dict[str, Any]:
    return _plain({
        'id': rule.id,
        'userId': rule.user_id,
        'ruleType': rule.rule_type,
        'conditions': rule.conditions,
        'actions': rule.actions,
        'isActive': rule.is_active,
        'createdAt': rule.created_at,
    })


def job_to_dict(job) -> Dict[str, Any]:
    return _plain({
        'id': job.id,
        'userId': job.user_id,
        'source': job.source,
        'title': job.title,
        'description': job.description,
        'budgetMin': job.budget_min,
        'budgetMax': job.budget_max,
        'postedAt': job.posted_at,
        'scrapedAt': job.scraped_at,
        'metadata': job.metadata_ or {},
    })


def proposal_to_dict(proposal) -> Dict[str, Any]:
    return _plain({
        'id': proposal.id,
        'jobId': proposal.job_id,
        'content': proposal.content,
        'status': proposal.status,
        'generatedAt': proposal.generated_at,
        'metadata': proposal.metadata_ or {},
    })


def result_to_dict(result: SearchResult) -> Dict[str, Any]:
    return _plain(asdict(result))


def _search_options(limit: int,
                    offset: int,
                    file_types: Optional[List[str]],
                    tags: Optional[List[str]],
                    start_date: Optional[str],
                    end_date: Optional[str]) -> SearchOptions:
    date_range = None
    if start_date or end_date:
        date_range = DateRange(start=parse_timestamp(start_date), end=parse_timestamp(end_date))
    return SearchOptions(limit=limit, offset=offset, file_types=file_types, tags=tags, date_range=date_range)


def _fail(action: str, e: Exception) -> Exception:
    if isinstance(e, TrinityMemoryError):
        logger.error(f'{action} failed: {e}')
        return Exception(e.to_dict())
    logger.error(f'Unexpected error in MCP {action}: {e}')
    return Exception(f'{action} failed: {e}')


# Conversations


@mcp.tool()
def save_conversation(user_id: str,
                      messages: List[Dict[str, Any]],
                      metadata: Optional[Dict[str, Any]] = None,
                      session_id: Optional[str] = None) -> Dict[str, Any]:
    """Save a conversation, index its transcript and run the user's memory rules.

    Args:
        user_id: User ID
        messages: List of {"role": "user"|"assistant", "content": str, "timestamp": optional ISO string}
        metadata: Optional metadata; metadata.tags labels the transcript
        session_id: Optional client session ID

    Returns:
        conversationId, filePath, indexed, messageCount and triggeredActions
    """
    try:
        result = get_system().memory.save_conversation(messages, user_id, metadata=metadata, session_id=session_id)
        return {
            'conversationId': result.conversation_id,
            'filePath': result.file_path,
            'indexed': result.indexed,
            'messageCount': result.message_count,
            'triggeredActions': result.triggered_actions,
        }
    except Exception as e:
        raise _fail('Save conversation', e)


@mcp.tool()
def get_conversation(user_id: str, conversation_id: str) -> Dict[str, Any]:
    """Get a conversation with its stored transcript."""
    try:
        memory = get_system().memory
        data = conversation_to_dict(memory.get_conversation(conversation_id, user_id))
        data['transcript'] = _plain(memory.load_transcript(conversation_id, user_id))
        return data
    except Exception as e:
        raise _fail('Get conversation', e)


@mcp.tool()
def list_conversations(user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
    """List the user's conversations, newest first."""
    try:
        conversations = get_system().memory.list_conversations(user_id, limit=limit, offset=offset)
        return [conversation_to_dict(c) for c in conversations]
    except Exception as e:
        raise _fail('List conversations', e)


@mcp.tool()
def generate_summary(user_id: str, conversation_id: str, style: str = 'brief') -> Dict[str, Any]:
    """Summarize a conversation (style: brief, detailed or bullet) and store the summary file."""
    try:
        return {'summary': get_system().memory.generate_summary(conversation_id, user_id, style)}
    except Exception as e:
        raise _fail('Generate summary', e)


@mcp.tool()
def tag_conversation(user_id: str, conversation_id: str, tags: List[str]) -> List[str]:
    """Attach tags to a conversation and its files. Returns the conversation's tags."""
    try:
        return get_system().memory.tag_conversation(conversation_id, tags, user_id)
    except Exception as e:
        raise _fail('Tag conversation', e)


@mcp.tool()
def export_conversation(user_id: str,
                        conversation_id: str,
                        format: str = 'json',
                        destination: Optional[str] = None) -> Dict[str, Any]:
    """Export a conversation to the share as json or markdown. Returns the written path."""
    try:
        return {'filePath': get_system().memory.export_conversation(conversation_id, user_id, format, destination)}
    except Exception as e:
        raise _fail('Export conversation', e)


@mcp.tool()
def get_conversation_stats(user_id: str, days: int = 30) -> Dict[str, Any]:
    """Conversation statistics over the last N days."""
    try:
        return _plain(get_system().memory.get_conversation_stats(user_id, days))
    except Exception as e:
        raise _fail('Conversation stats', e)


@mcp.tool()
def find_similar_conversations(user_id: str, conversation_id: str, limit: int = 5) -> List[Dict[str, Any]]:
    """Conversations sharing tags with the given one."""
    try:
        conversations = get_system().memory.find_similar_conversations(conversation_id, user_id, limit)
        return [conversation_to_dict(c) for c in conversations]
    except Exception as e:
        raise _fail('Find similar conversations', e)


# Search


@mcp.tool()
def search_memory(user_id: str,
                  query: str,
                  limit: int = 10,
                  offset: int = 0,
                  file_types: Optional[List[str]] = None,
                  tags: Optional[List[str]] = None,
                  start_date: Optional[str] = None,
                  end_date: Optional[str] = None) -> List[Dict[str, Any]]:
    """Search the user's memory with a natural language query.

    The query is routed to semantic, structured or hybrid retrieval. Explicit
    filters apply when the query itself carries none.

    Args:
        user_id: User ID
        query: Natural language query
        limit: Maximum number of results to return (default: 10)
        offset: Results to skip (structured and hybrid retrieval)
        file_types: Restrict to these file types
        tags: Restrict to files carrying all these tags
        start_date: ISO timestamp lower bound on file creation
        end_date: ISO timestamp upper bound on file creation

    Returns:
        List of results with path, content, score and relevant section
    """
    try:
        options = _search_options(limit, offset, file_types, tags, start_date, end_date)
        results = get_system().search.search(query, user_id, options)

        logger.debug(f'MCP search returned {len(results)} results for user {user_id}')
        return [result_to_dict(r) for r in results]
    except Exception as e:
        raise _fail('Memory search', e)


@mcp.tool()
def count_files(user_id: str, query: str) -> Dict[str, Any]:
    """Count the user's files matching a structured query (e.g. 'how many conversations last 7 days')."""
    try:
        return {'count': get_system().search.count(query, user_id)}
    except Exception as e:
        raise _fail('Count files', e)


@mcp.tool()
def get_file(user_id: str, file_path: str) -> Dict[str, Any]:
    """Read one of the user's files by its share path."""
    try:
        return result_to_dict(get_system().search.get_file_by_path(file_path, user_id))
    except Exception as e:
        raise _fail('Get file', e)


# Files


@mcp.tool()
def upload_file(user_id: str, filename: str, content: str, category: str = 'documents') -> Dict[str, Any]:
    """Write a text file to the user's share area and index it."""
    try:
        return file_to_dict(get_system().memory.upload_file(user_id, filename, content, category))
    except Exception as e:
        raise _fail('Upload file', e)


@mcp.tool()
def list_files(user_id: str,
               file_type: Optional[str] = None,
               tags: Optional[List[str]] = None,
               limit: int = 20,
               offset: int = 0) -> List[Dict[str, Any]]:
    """List the user's indexed files, newest first."""
    try:
        records = get_system().memory.list_files(user_id, file_type=file_type, tags=tags, limit=limit, offset=offset)
        return [file_to_dict(r) for r in records]
    except Exception as e:
        raise _fail('List files', e)


@mcp.tool()
def reindex_file(user_id: str, file_path: str) -> Dict[str, Any]:
    """Re-index one of the user's files after it changed on the share."""
    try:
        return file_to_dict(get_system().memory.reindex_file(file_path, user_id))
    except Exception as e:
        raise _fail('Reindex file', e)


@mcp.tool()
def sync_files(user_id: str, subdirectory: str = '') -> Dict[str, Any]:
    """Index every new or changed file under the user's share area."""
    try:
        if not user_id or not user_id.strip():
            raise ValidationError('User ID is required')
        parts = [p for p in subdirectory.split('/') if p]
        if '..' in parts:
            raise ValidationError(f'Invalid subdirectory: {subdirectory!r}')

        system = get_system()
        directory = '/'.join([f'/{system.config.blob_store.root_namespace}/users/{user_id}'] + parts)
        summary = system.indexer.sync_directory(directory, user_id)
        return asdict(summary)
    except Exception as e:
        raise _fail('Sync files', e)


# Rules


@mcp.tool()
def list_rules(user_id: str, active_only: bool = False) -> List[Dict[str, Any]]:
    """List the user's memory rules."""
    try:
        return [rule_to_dict(r) for r in get_system().triggers.list_rules(user_id, active_only)]
    except Exception as e:
        raise _fail('List rules', e)


@mcp.tool()
def create_rule(user_id: str,
                rule_type: str,
                conditions: Dict[str, Any],
                actions: Dict[str, Any],
                is_active: bool = True) -> Dict[str, Any]:
    """Create a memory rule.

    Args:
        user_id: User ID
        rule_type: length, keyword or time
        conditions: e.g. {"minMessages": 10}, {"keywords": ["todo"], "matchType": "any"} or {"interval": "1d"}
        actions: e.g. {"tag": ["important"]}, {"generateSummary": true}, {"backup": true, "destination": "nas"}
        is_active: Whether the rule is evaluated on save
    """
    try:
        rule = get_system().triggers.create_rule(user_id, rule_type, conditions, actions, is_active)
        return rule_to_dict(rule)
    except Exception as e:
        raise _fail('Create rule', e)


@mcp.tool()
def create_default_rules(user_id: str) -> List[Dict[str, Any]]:
    """Seed the default length, keyword and time rules for a user."""
    try:
        return [rule_to_dict(r) for r in get_system().triggers.create_default_rules(user_id)]
    except Exception as e:
        raise _fail('Create default rules', e)


# Agent jobs and proposals


@mcp.tool()
def create_job(user_id: str,
               title: str,
               description: Optional[str] = None,
               source: Optional[str] = None,
               budget_min: Optional[float] = None,
               budget_max: Optional[float] = None,
               posted_at: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Store a scraped freelance job."""
    try:
        job = get_system().proposals.create_job(user_id,
                                                title,
                                                description=description,
                                                source=source,
                                                budget_min=budget_min,
                                                budget_max=budget_max,
                                                posted_at=posted_at,
                                                metadata=metadata)
        return job_to_dict(job)
    except Exception as e:
        raise _fail('Create job', e)


@mcp.tool()
def list_jobs(user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
    """List the user's stored jobs, newest first."""
    try:
        return [job_to_dict(j) for j in get_system().proposals.list_jobs(user_id, limit, offset)]
    except Exception as e:
        raise _fail('List jobs', e)


@mcp.tool()
def get_job(user_id: str, job_id: str) -> Dict[str, Any]:
    """Get one stored job."""
    try:
        return job_to_dict(get_system().proposals.get_job(job_id, user_id))
    except Exception as e:
        raise _fail('Get job', e)


@mcp.tool()
def generate_proposal(user_id: str,
                      job_id: str,
                      template: Optional[str] = None,
                      custom_instructions: Optional[str] = None) -> Dict[str, Any]:
    """Generate a proposal for a stored job and save it to the share."""
    try:
        generated = get_system().proposals.generate_proposal(job_id, user_id, template, custom_instructions)
        return {
            'proposal': proposal_to_dict(generated['proposal']),
            'filePath': generated['file_path'],
            'fullContent': generated['full_content'],
        }
    except Exception as e:
        raise _fail('Generate proposal', e)


@mcp.tool()
def list_proposals(user_id: str, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """List the user's proposals, optionally for one job."""
    try:
        return [proposal_to_dict(p) for p in get_system().proposals.list_proposals(user_id, job_id)]
    except Exception as e:
        raise _fail('List proposals', e)


@mcp.tool()
def get_proposal(user_id: str, proposal_id: str) -> Dict[str, Any]:
    """Get one proposal."""
    try:
        return proposal_to_dict(get_system().proposals.get_proposal(proposal_id, user_id))
    except Exception as e:
        raise _fail('Get proposal', e)


# Operations


@mcp.tool()
def health() -> Dict[str, Any]:
    """Health of the catalog, share, vector index and model clients."""
    status = get_health_status(get_system())
    return {'healthy': all(s.get('healthy') for s in status.values()), 'components': status, 'system': get_system_info()}


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
