"""
Memory Service for the conversation save pipeline and conversation operations.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from ..models.catalog import Conversation, FileRecord
from ..models.core import MESSAGE_ROLES, Message, SaveConversationResult
from ..models.rules import BackupAction, ExportAction, GenerateSummaryAction, NotifyAction, TagAction
from ..utils.blob_store import BlobStore, build_user_path
from ..utils.catalog_client import CatalogClient
from ..utils.config import BlobStoreConfig
from ..utils.errors import DependencyError, NotFoundError, TrinityMemoryError, ValidationError
from ..utils.json_utils import dump_json, try_parse_json
from ..utils.logging_config import get_logger
from ..utils.text_chunker import estimate_tokens
from ..utils.timestamp_utils import parse_timestamp, to_iso, utc_now
from .conversation_analysis import ConversationAnalysisService
from .file_indexer import FileIndexer
from .trigger_service import TriggerService

logger = get_logger(__name__)

EXPORT_FORMATS = ('json', 'markdown')


class MemoryServiceError(DependencyError):
    """Custom exception for memory service errors."""
    pass


def coerce_messages(messages: Any) -> List[Message]:
    """
    Validate caller-supplied messages.

    Accepts Message instances or dicts with ``role``, ``content`` and an optional ``timestamp``.

    Raises:
        ValidationError: If the list is empty or any message is malformed
    """
    if not isinstance(messages, (list, tuple)) or not messages:
        raise ValidationError('messages must be a non-empty list')

    coerced = []
    for index, raw in enumerate(messages):
        if isinstance(raw, Message):
            role, content, timestamp = raw.role, raw.content, parse_timestamp(raw.timestamp)
        elif isinstance(raw, dict):
            role, content, timestamp = raw.get('role'), raw.get('content'), parse_timestamp(raw.get('timestamp'))
        else:
            raise ValidationError(f'message {index} must be an object')

        if role not in MESSAGE_ROLES:
            raise ValidationError(f'message {index} has invalid role {role!r}')
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(f'message {index} has empty content')
        coerced.append(Message(role=role, content=content, timestamp=timestamp))
    return coerced


def render_markdown(conversation: Conversation, messages: Sequence[Dict[str, Any]]) -> str:
    lines = [
        f'# Conversation {conversation.id}',
        '',
        f'**Date:** {to_iso(conversation.started_at)}',
        f'**Messages:** {conversation.message_count}',
        f"**Tags:** {', '.join(conversation.tags)}",
        '',
    ]
    if conversation.summary:
        lines += ['## Summary', '', conversation.summary, '']

    lines += ['## Messages', '']
    for message in messages:
        lines.append(f"### {str(message.get('role', 'unknown')).upper()}")
        if message.get('timestamp'):
            lines.append(f"*{message['timestamp']}*")
        lines += ['', str(message.get('content', '')), '', '---', '']
    return '\n'.join(lines)


class MemoryService:
    """Save conversations across the catalog, the file share and the vector index, and operate on them."""

    def __init__(self, catalog: CatalogClient, blob_store: BlobStore, indexer: FileIndexer, triggers: TriggerService,
                 analysis: ConversationAnalysisService, config: BlobStoreConfig):
        """
        Initialize the memory service and register it as executor of trigger actions.

        Args:
            catalog: Metadata catalog client
            blob_store: File share for transcripts, summaries, exports and backups
            indexer: File indexer
            triggers: Trigger service evaluating the user's rules
            analysis: Conversation analysis service
            config: BlobStoreConfig with the share's root namespace
        """
        self.catalog = catalog
        self.blob_store = blob_store
        self.indexer = indexer
        self.triggers = triggers
        self.analysis = analysis
        self.root_namespace = config.root_namespace

        triggers.register_handler(GenerateSummaryAction.type,
                                  lambda action, conv_id, user_id: self.generate_summary(conv_id, user_id, action.style))
        triggers.register_handler(TagAction.type,
                                  lambda action, conv_id, user_id: self.tag_conversation(conv_id, action.tags, user_id))
        triggers.register_handler(BackupAction.type,
                                  lambda action, conv_id, user_id: self.backup_conversation(conv_id, user_id, action.destination))
        triggers.register_handler(NotifyAction.type,
                                  lambda action, conv_id, user_id: self.notify(conv_id, user_id, action.method, action.message))
        triggers.register_handler(
            ExportAction.type,
            lambda action, conv_id, user_id: self.export_conversation(conv_id, user_id, action.format, action.destination))

        logger.info('Initialized MemoryService')

    def _user_path(self, user_id: str, category: str, filename: str) -> str:
        return build_user_path(self.root_namespace, user_id, category, filename)

    @staticmethod
    def _subfolder(base: str, destination: Optional[str]) -> str:
        parts = [part for part in (destination or '').split('/') if part]
        if '..' in parts:
            raise ValidationError(f'Invalid destination: {destination!r}')
        return '/'.join([base] + parts)

    def save_conversation(self,
                          messages: Sequence[Union[Message, Dict[str, Any]]],
                          user_id: str,
                          metadata: Optional[Dict[str, Any]] = None,
                          session_id: Optional[str] = None) -> SaveConversationResult:
        """
        Save a conversation: analysis, catalog rows, transcript file, index, then triggers.

        Args:
            messages: Conversation turns
            user_id: Owning user
            metadata: Caller metadata stored with the conversation
            session_id: Optional client session identifier

        Returns:
            SaveConversationResult

        Raises:
            ValidationError: If the input is malformed (nothing is written)
            MemoryServiceError: If the catalog, file share or index write fails
        """
        if not user_id:
            raise ValidationError('user_id is required')
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError('metadata must be an object')
        messages = coerce_messages(messages)

        logger.info(f'Saving conversation for user {user_id} with {len(messages)} messages')

        try:
            analysis = self.analysis.analyze(messages)
            token_counts = [estimate_tokens(message.content) for message in messages]
            conversation_metadata = {**(metadata or {}), **analysis.to_metadata()}

            conversation = self.catalog.create_conversation(user_id,
                                                            messages,
                                                            token_counts,
                                                            metadata=conversation_metadata,
                                                            summary=analysis.summary,
                                                            session_id=session_id)

            now = utc_now()
            file_path = self._user_path(user_id, 'conversations', f'conv_{conversation.id}.json')
            document = {
                'id': conversation.id,
                'userId': user_id,
                'timestamp': to_iso(now),
                'messages': [{
                    'role': message.role,
                    'content': message.content,
                    'timestamp': to_iso(message.timestamp or now)
                } for message in messages],
                'summary': analysis.summary,
                'tags': [tag for tag in (metadata or {}).get('tags') or [] if isinstance(tag, str)],
                'metadata': {
                    **conversation_metadata,
                    'messageCount': len(messages),
                    'totalTokens': sum(token_counts),
                },
            }
            self.blob_store.write_file(file_path, dump_json(document))

            self.indexer.index_file(file_path, user_id, conversation.id)
        except TrinityMemoryError as e:
            logger.error(f'Failed to save conversation for user {user_id}: {e}')
            raise MemoryServiceError(f'Failed to save conversation: {e.message}')
        except Exception as e:
            logger.error(f'Unexpected error saving conversation for user {user_id}: {e}')
            raise MemoryServiceError(f'Failed to save conversation: {e}')

        triggered = self._run_triggers(conversation.id, messages, user_id)

        logger.info(f'Successfully saved conversation {conversation.id} to {file_path}')
        return SaveConversationResult(conversation_id=conversation.id,
                                      file_path=file_path,
                                      indexed=True,
                                      message_count=len(messages),
                                      triggered_actions=triggered)

    def _run_triggers(self, conversation_id: str, messages: Sequence[Message], user_id: str) -> List[str]:
        # The conversation is already durable; rule failures must not fail the save
        try:
            actions = self.triggers.evaluate_triggers(conversation_id, messages, user_id)
        except Exception as e:
            logger.warning(f'Failed to evaluate triggers for conversation {conversation_id}: {e}')
            return []
        self.triggers.execute_trigger_actions(actions, conversation_id, user_id)
        return [action.type for action in actions]

    def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """
        Raises:
            NotFoundError: If the user has no such conversation
        """
        conversation = self.catalog.get_conversation(conversation_id, user_id)
        if conversation is None:
            raise NotFoundError('Conversation not found')
        return conversation

    def list_conversations(self,
                           user_id: str,
                           limit: int = 20,
                           offset: int = 0,
                           status: Optional[str] = None) -> List[Conversation]:
        return self.catalog.list_conversations(user_id, limit=limit, offset=offset, status=status)

    def _transcript_record(self, conversation_id: str, user_id: str) -> FileRecord:
        records = self.catalog.list_conversation_files(conversation_id, user_id, file_type='conversation')
        if not records:
            raise NotFoundError('Conversation transcript not found')
        return records[0]

    def load_transcript(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        """
        Read a conversation's transcript document from the file share.

        Raises:
            NotFoundError: If the conversation or its transcript does not exist
        """
        self.get_conversation(conversation_id, user_id)
        record = self._transcript_record(conversation_id, user_id)
        data = try_parse_json(self.blob_store.read_file(record.file_path))
        if not isinstance(data, dict) or not isinstance(data.get('messages'), list):
            raise MemoryServiceError(f'Transcript {record.file_path} is not a conversation document')
        return data

    def generate_summary(self, conversation_id: str, user_id: str, style: str = 'brief') -> str:
        """
        Summarize a conversation, store the summary and index it as a summary file.

        Returns:
            The summary text

        Raises:
            NotFoundError: If the user has no such conversation
            MemoryServiceError: If storing or indexing the summary fails
        """
        transcript = self.load_transcript(conversation_id, user_id)
        messages = [
            Message(role=str(m.get('role', 'user')), content=str(m.get('content', ''))) for m in transcript['messages']
            if isinstance(m, dict)
        ]
        summary = self.analysis.summarize(messages, style)

        try:
            self.catalog.update_conversation(conversation_id, user_id, summary=summary)

            summary_path = self._user_path(user_id, 'summaries', f'summary_{conversation_id}.md')
            self.blob_store.write_file(summary_path, f'# Summary of conversation {conversation_id}\n\n{summary}\n')
            self.indexer.index_file(summary_path, user_id, conversation_id)
        except TrinityMemoryError as e:
            logger.error(f'Failed to store summary for conversation {conversation_id}: {e}')
            raise MemoryServiceError(f'Failed to store summary: {e.message}')

        logger.info(f'Generated {style} summary for conversation {conversation_id}')
        return summary

    def tag_conversation(self, conversation_id: str, tag_names: Sequence[str], user_id: str) -> List[str]:
        """
        Tag a conversation and the files that belong to it. Re-tagging is idempotent.

        Returns:
            The conversation's tags

        Raises:
            ValidationError: If no usable tag name is given
            NotFoundError: If the user has no such conversation
        """
        names = [name.strip() for name in tag_names if isinstance(name, str) and name.strip()]
        if not names:
            raise ValidationError('at least one tag name is required')

        tags = self.catalog.tag_conversation(conversation_id, user_id, names)
        if tags is None:
            raise NotFoundError('Conversation not found')

        for record in self.catalog.list_conversation_files(conversation_id, user_id):
            self.catalog.add_file_tags(record.id, user_id, names)

        logger.info(f"Tagged conversation {conversation_id} with: {', '.join(names)}")
        return tags

    def export_conversation(self,
                            conversation_id: str,
                            user_id: str,
                            format: str = 'json',
                            destination: Optional[str] = None) -> str:
        """
        Render a conversation as JSON or markdown and write it under the user's exports.

        Returns:
            Share path of the export
        """
        if format not in EXPORT_FORMATS:
            raise ValidationError(f'Unsupported export format: {format!r}')

        conversation = self.get_conversation(conversation_id, user_id)
        messages = self.load_transcript(conversation_id, user_id)['messages']

        if format == 'markdown':
            content, extension = render_markdown(conversation, messages), 'md'
        else:
            content, extension = dump_json({
                'id': conversation.id,
                'userId': conversation.user_id,
                'status': conversation.status,
                'summary': conversation.summary,
                'metadata': conversation.metadata_,
                'tags': conversation.tags,
                'startedAt': to_iso(conversation.started_at),
                'messageCount': conversation.message_count,
                'totalTokens': conversation.total_tokens,
                'messages': messages,
            }), 'json'

        category = self._subfolder('exports', destination)
        export_path = self._user_path(user_id, category, f'conv_{conversation_id}.{extension}')
        self.blob_store.write_file(export_path, content)

        logger.info(f'Exported conversation {conversation_id} as {format} to {export_path}')
        return export_path

    def backup_conversation(self, conversation_id: str, user_id: str, destination: str) -> str:
        """
        Copy a conversation's transcript under the user's backups for the given destination.

        Returns:
            Share path of the backup copy
        """
        self.get_conversation(conversation_id, user_id)
        record = self._transcript_record(conversation_id, user_id)
        content = self.blob_store.read_file(record.file_path)

        backup_path = self._user_path(user_id, self._subfolder('backups', destination), record.file_name)
        self.blob_store.write_file(backup_path, content)

        logger.info(f'Backed up conversation {conversation_id} to {backup_path}')
        return backup_path

    def notify(self, conversation_id: str, user_id: str, method: str, message: Optional[str] = None) -> None:
        # Delivery channels live outside this service; the event is recorded in the log
        logger.info(f'Notification via {method} for user {user_id}, conversation {conversation_id}: '
                    f'{message or "conversation matched a memory rule"}')

    def get_conversation_stats(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        return self.catalog.conversation_stats(user_id, days=days)

    def find_similar_conversations(self, conversation_id: str, user_id: str, limit: int = 5) -> List[Conversation]:
        """
        Conversations sharing at least one tag with the given one.

        Raises:
            NotFoundError: If the user has no such conversation
        """
        similar = self.catalog.find_similar_conversations(conversation_id, user_id, limit=limit)
        if similar is None:
            raise NotFoundError('Conversation not found')
        return similar

    # Files

    def upload_file(self, user_id: str, filename: str, content: str, category: str = 'documents') -> FileRecord:
        """
        Write a file to the user's area of the share and index it.

        Raises:
            ValidationError: If the file name is not a plain name
        """
        if not user_id:
            raise ValidationError('user_id is required')
        if not filename or '/' in filename or filename in ('.', '..'):
            raise ValidationError(f'Invalid file name: {filename!r}')
        if not isinstance(content, str):
            raise ValidationError('content must be text')

        file_path = self._user_path(user_id, category, filename)
        self.blob_store.write_file(file_path, content)
        return self.indexer.index_file(file_path, user_id)

    def list_files(self,
                   user_id: str,
                   file_type: Optional[str] = None,
                   tags: Optional[Sequence[str]] = None,
                   limit: int = 20,
                   offset: int = 0) -> List[FileRecord]:
        return self.catalog.query_files(user_id,
                                        file_types=[file_type] if file_type else None,
                                        tags=tags,
                                        limit=limit,
                                        offset=offset)

    def reindex_file(self, file_path: str, user_id: str) -> FileRecord:
        """
        Re-index a file the user already owns.

        Raises:
            NotFoundError: If the user has no such file
        """
        if self.catalog.get_file(user_id, file_path) is None:
            raise NotFoundError('File not found or access denied')
        return self.indexer.index_file(file_path, user_id)
