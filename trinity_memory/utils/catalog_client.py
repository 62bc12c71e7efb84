"""
Relational metadata catalog client built on SQLAlchemy.

Every query is scoped by ``user_id``; there is no cross-user read path.
"""

import posixpath
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import create_engine, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..models.catalog import (AgentJob, Base, Conversation, ConversationTag, FileAccessLog, FileRecord, FileTag,
                              MemoryRule, MemoryTrigger, Message, Proposal, SearchQuery, Tag)
from ..models.core import DateRange
from ..models.core import Message as ConversationMessage
from .config import DatabaseConfig
from .errors import DependencyError
from .logging_config import get_logger
from .timestamp_utils import utc_now

logger = get_logger(__name__)


class CatalogError(DependencyError):
    """Custom exception for metadata catalog errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry catalog operations once when the pooled connection was dropped."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except DBAPIError as e:
            if not e.connection_invalidated:
                logger.error(f'Error in {func.__name__}: {e}')
                raise CatalogError(f'Failed to {func.__name__}: {e}')
            logger.warning(f'Connection error detected: {e}. Reconnecting...')
            self.engine.dispose()
            try:
                return func(self, *args, **kwargs)
            except SQLAlchemyError as retry_e:
                logger.error(f'Error in {func.__name__}: {retry_e}')
                raise CatalogError(f'Failed to {func.__name__}: {retry_e}')
        except SQLAlchemyError as e:
            logger.error(f'Error in {func.__name__}: {e}')
            raise CatalogError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _create_engine(config: DatabaseConfig) -> Engine:
    if config.url.startswith('sqlite'):
        kwargs: Dict[str, Any] = {'connect_args': {'check_same_thread': False}}
        if config.url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
        return create_engine(config.url, echo=config.echo, **kwargs)
    return create_engine(config.url, echo=config.echo, pool_pre_ping=True, pool_timeout=config.pool_timeout)


class CatalogClient:
    """Metadata catalog over conversations, files, tags, rules, triggers and logs."""

    def __init__(self, config: DatabaseConfig, engine: Optional[Engine] = None):
        """
        Initialize the catalog client.

        Args:
            config: DatabaseConfig instance with connection parameters
            engine: Pre-built SQLAlchemy engine (built from config if None)
        """
        self.config = config
        self.engine = engine or _create_engine(config)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.info(f'Initialized catalog client for {self.engine.url.render_as_string(hide_password=True)}')

    def create_schema(self) -> None:
        """Create all catalog tables that do not exist yet."""
        try:
            Base.metadata.create_all(self.engine)
            logger.debug('Catalog schema ready')
        except SQLAlchemyError as e:
            logger.error(f'Error creating catalog schema: {e}')
            raise CatalogError(f'Failed to create catalog schema: {e}')

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Conversations

    @retry_on_connection_error
    def create_conversation(self,
                            user_id: str,
                            messages: Sequence[ConversationMessage],
                            token_counts: Sequence[int],
                            metadata: Optional[Dict[str, Any]] = None,
                            summary: Optional[str] = None,
                            session_id: Optional[str] = None) -> Conversation:
        """
        Create a conversation together with its message rows.

        Args:
            user_id: Owning user
            messages: Conversation turns, in order
            token_counts: Estimated token count per message
            metadata: Free-form metadata (topics, sentiment, key points, ...)
            summary: Optional summary
            session_id: Optional client session identifier

        Returns:
            The persisted Conversation
        """
        now = utc_now()
        conversation = Conversation(user_id=user_id,
                                    session_id=session_id,
                                    message_count=len(messages),
                                    total_tokens=sum(token_counts),
                                    status='active',
                                    summary=summary,
                                    metadata_=metadata or {},
                                    started_at=(messages[0].timestamp if messages else None) or now)
        conversation.messages = [
            Message(role=message.role, token_count=tokens, timestamp=message.timestamp or now)
            for message, tokens in zip(messages, token_counts)
        ]
        conversation.tag_links = []

        with self.session_scope() as session:
            session.add(conversation)

        logger.debug(f'Created conversation {conversation.id} with {len(messages)} messages')
        return conversation

    @retry_on_connection_error
    def get_conversation(self, conversation_id: str, user_id: str) -> Optional[Conversation]:
        with self.session_scope() as session:
            return session.execute(select(Conversation).filter_by(id=conversation_id, user_id=user_id)).scalar_one_or_none()

    @retry_on_connection_error
    def list_conversations(self,
                           user_id: str,
                           limit: int = 20,
                           offset: int = 0,
                           status: Optional[str] = None) -> List[Conversation]:
        stmt = select(Conversation).where(Conversation.user_id == user_id)
        if status:
            stmt = stmt.where(Conversation.status == status)
        stmt = stmt.order_by(Conversation.started_at.desc()).limit(limit).offset(offset)
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    @retry_on_connection_error
    def update_conversation(self, conversation_id: str, user_id: str, **fields) -> Optional[Conversation]:
        """Update summary, status, ended_at or metadata of a conversation owned by user_id."""
        allowed = {'summary', 'status', 'ended_at', 'metadata_'}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f'Cannot update conversation fields: {sorted(unknown)}')

        with self.session_scope() as session:
            conversation = session.execute(select(Conversation).filter_by(id=conversation_id,
                                                                          user_id=user_id)).scalar_one_or_none()
            if conversation is None:
                return None
            for name, value in fields.items():
                setattr(conversation, name, value)
            return conversation

    def _upsert_tags(self, session: Session, user_id: str, names: Iterable[str]) -> List[Tag]:
        tags = []
        for name in dict.fromkeys(n.strip() for n in names if n and n.strip()):
            tag = session.execute(select(Tag).filter_by(name=name, user_id=user_id)).scalar_one_or_none()
            if tag is None:
                try:
                    with session.begin_nested():
                        tag = Tag(name=name, user_id=user_id)
                        session.add(tag)
                except IntegrityError:
                    # Created concurrently under the same (name, user_id) key
                    tag = session.execute(select(Tag).filter_by(name=name, user_id=user_id)).scalar_one()
            tags.append(tag)
        return tags

    @retry_on_connection_error
    def upsert_tags(self, user_id: str, names: Iterable[str], category: Optional[str] = None) -> List[Tag]:
        """Get or create tags by their (name, user_id) key."""
        with self.session_scope() as session:
            tags = self._upsert_tags(session, user_id, names)
            if category:
                for tag in tags:
                    tag.category = tag.category or category
            return tags

    @retry_on_connection_error
    def tag_conversation(self, conversation_id: str, user_id: str, tag_names: Iterable[str]) -> Optional[List[str]]:
        """
        Attach tags to a conversation; existing links are left untouched.

        Returns:
            The conversation's full tag list, or None if the conversation is not owned by user_id
        """
        with self.session_scope() as session:
            conversation = session.execute(select(Conversation).filter_by(id=conversation_id,
                                                                          user_id=user_id)).scalar_one_or_none()
            if conversation is None:
                return None

            linked = {link.tag_id for link in conversation.tag_links}
            for tag in self._upsert_tags(session, user_id, tag_names):
                if tag.id not in linked:
                    conversation.tag_links.append(ConversationTag(tag_id=tag.id, tag=tag))
                    linked.add(tag.id)
            session.flush()
            return conversation.tags

    @retry_on_connection_error
    def conversation_stats(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        """Aggregate counts, token totals, top tags and a per-day histogram for a user."""
        start = utc_now() - timedelta(days=days)
        with self.session_scope() as session:
            total, message_sum, message_avg, token_sum = session.execute(
                select(func.count(Conversation.id), func.sum(Conversation.message_count),
                       func.avg(Conversation.message_count),
                       func.sum(Conversation.total_tokens)).where(Conversation.user_id == user_id)).one()

            top_tags = session.execute(
                select(Tag.name,
                       func.count(ConversationTag.conversation_id).label('count')).join(
                           ConversationTag, ConversationTag.tag_id == Tag.id).join(
                               Conversation, Conversation.id == ConversationTag.conversation_id).where(
                                   Conversation.user_id == user_id).group_by(Tag.name).order_by(
                                       func.count(ConversationTag.conversation_id).desc()).limit(10)).all()

            day = func.date(Conversation.started_at)
            by_day = session.execute(
                select(day.label('day'), func.count(Conversation.id)).where(Conversation.user_id == user_id,
                                                                            Conversation.started_at >= start).group_by(
                                                                                day).order_by(day.desc())).all()

        return {
            'total_conversations': total or 0,
            'total_messages': int(message_sum or 0),
            'total_tokens': int(token_sum or 0),
            'average_message_count': round(float(message_avg or 0)),
            'top_tags': [{
                'name': name,
                'count': count
            } for name, count in top_tags],
            'conversations_by_day': [{
                'date': str(day_value)[:10],
                'count': count
            } for day_value, count in by_day],
        }

    @retry_on_connection_error
    def find_similar_conversations(self, conversation_id: str, user_id: str, limit: int = 5) -> Optional[List[Conversation]]:
        """Conversations sharing at least one tag with the given one, newest first."""
        with self.session_scope() as session:
            conversation = session.execute(select(Conversation).filter_by(id=conversation_id,
                                                                          user_id=user_id)).scalar_one_or_none()
            if conversation is None:
                return None

            tag_ids = [link.tag_id for link in conversation.tag_links]
            if not tag_ids:
                return []

            stmt = select(Conversation).where(Conversation.user_id == user_id, Conversation.id != conversation_id,
                                              Conversation.tag_links.any(ConversationTag.tag_id.in_(tag_ids))).order_by(
                                                  Conversation.started_at.desc()).limit(limit)
            return list(session.execute(stmt).scalars())

    # File registry

    @retry_on_connection_error
    def get_file(self, user_id: str, file_path: str) -> Optional[FileRecord]:
        with self.session_scope() as session:
            return session.execute(select(FileRecord).filter_by(user_id=user_id, file_path=file_path)).scalar_one_or_none()

    @retry_on_connection_error
    def get_files_by_paths(self, user_id: str, file_paths: Iterable[str]) -> Dict[str, FileRecord]:
        paths = list(dict.fromkeys(file_paths))
        if not paths:
            return {}
        with self.session_scope() as session:
            stmt = select(FileRecord).where(FileRecord.user_id == user_id, FileRecord.file_path.in_(paths))
            return {record.file_path: record for record in session.execute(stmt).scalars()}

    @retry_on_connection_error
    def list_conversation_files(self,
                                conversation_id: str,
                                user_id: str,
                                file_type: Optional[str] = None) -> List[FileRecord]:
        stmt = select(FileRecord).where(FileRecord.user_id == user_id, FileRecord.conversation_id == conversation_id)
        if file_type:
            stmt = stmt.where(FileRecord.file_type == file_type)
        with self.session_scope() as session:
            return list(session.execute(stmt.order_by(FileRecord.created_at)).scalars())

    @retry_on_connection_error
    def upsert_file(self,
                    user_id: str,
                    file_path: str,
                    file_type: str,
                    file_size: int,
                    checksum: str,
                    title: str,
                    summary: str,
                    tags: Sequence[str],
                    metadata: Dict[str, Any],
                    vector_ids: Sequence[str],
                    modified_at: Optional[datetime] = None,
                    conversation_id: Optional[str] = None) -> FileRecord:
        """
        Insert or overwrite the FileRecord keyed by (user_id, file_path).

        Returns:
            The persisted FileRecord
        """
        for attempt in range(2):
            try:
                with self.session_scope() as session:
                    record = session.execute(select(FileRecord).filter_by(user_id=user_id,
                                                                          file_path=file_path)).scalar_one_or_none()
                    now = utc_now()
                    if record is None:
                        record = FileRecord(user_id=user_id,
                                            file_path=file_path,
                                            file_name=posixpath.basename(file_path),
                                            folder_path=posixpath.dirname(file_path),
                                            file_type=file_type,
                                            created_at=now)
                        session.add(record)

                    record.file_size = file_size
                    record.checksum = checksum
                    record.title = title
                    record.summary = summary
                    record.metadata_ = metadata
                    record.vector_ids = list(vector_ids)
                    record.modified_at = modified_at or now
                    record.indexed_at = now
                    if conversation_id:
                        record.conversation_id = conversation_id

                    # Content tags follow the file; tags added later by users or rules are kept
                    wanted = list(dict.fromkeys(tags))
                    kept = [link for link in record.tag_links if link.source == 'user' or link.name in wanted]
                    existing = {link.name for link in kept}
                    record.tag_links = kept
                    record.tag_links.extend(FileTag(name=name, source='content') for name in wanted if name not in existing)
                    session.flush()
                    return record
            except IntegrityError:
                if attempt:
                    raise
                # Inserted concurrently under the same (user_id, file_path) key; last writer wins
                logger.debug(f'Concurrent insert detected for {file_path}, retrying as update')

    @retry_on_connection_error
    def shared_checksums(self, user_id: str, checksums: Iterable[str], exclude_path: str) -> List[str]:
        """Checksums among the given ones that another of the user's files still carries."""
        wanted = list(dict.fromkeys(checksums))
        if not wanted:
            return []
        stmt = select(FileRecord.checksum).where(FileRecord.user_id == user_id, FileRecord.checksum.in_(wanted),
                                                 FileRecord.file_path != exclude_path).distinct()
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    @retry_on_connection_error
    def add_file_tags(self, file_id: str, user_id: str, tags: Iterable[str]) -> Optional[List[str]]:
        with self.session_scope() as session:
            record = session.execute(select(FileRecord).filter_by(id=file_id, user_id=user_id)).scalar_one_or_none()
            if record is None:
                return None
            existing = set(record.tags)
            record.tag_links.extend(FileTag(name=name, source='user') for name in dict.fromkeys(tags) if name not in existing)
            session.flush()
            return record.tags

    @retry_on_connection_error
    def delete_file(self, file_id: str, user_id: str) -> bool:
        with self.session_scope() as session:
            record = session.execute(select(FileRecord).filter_by(id=file_id, user_id=user_id)).scalar_one_or_none()
            if record is None:
                return False
            session.delete(record)
            return True

    def _file_filters(self,
                      stmt,
                      user_id: str,
                      file_types: Optional[Sequence[str]] = None,
                      tags: Optional[Sequence[str]] = None,
                      date_range: Optional[DateRange] = None,
                      conversation_id: Optional[str] = None):
        stmt = stmt.where(FileRecord.user_id == user_id)
        if file_types:
            stmt = stmt.where(FileRecord.file_type.in_(list(file_types)))
        for tag in tags or []:
            stmt = stmt.where(FileRecord.tag_links.any(FileTag.name == tag))
        if date_range and date_range.start:
            stmt = stmt.where(FileRecord.created_at >= date_range.start)
        if date_range and date_range.end:
            stmt = stmt.where(FileRecord.created_at <= date_range.end)
        if conversation_id:
            stmt = stmt.where(FileRecord.conversation_id == conversation_id)
        return stmt

    @retry_on_connection_error
    def query_files(self,
                    user_id: str,
                    file_types: Optional[Sequence[str]] = None,
                    tags: Optional[Sequence[str]] = None,
                    date_range: Optional[DateRange] = None,
                    conversation_id: Optional[str] = None,
                    limit: int = 10,
                    offset: int = 0) -> List[FileRecord]:
        """
        Filtered file lookup, newest first.

        Args:
            user_id: Mandatory owner filter
            file_types: Match any of these file types
            tags: Every tag must be present on the file
            date_range: Inclusive bounds on creation time
            conversation_id: Parent conversation filter
            limit: Page size
            offset: Page offset

        Returns:
            List of FileRecord
        """
        stmt = self._file_filters(select(FileRecord), user_id, file_types, tags, date_range, conversation_id)
        stmt = stmt.order_by(FileRecord.created_at.desc(), FileRecord.file_path).limit(limit).offset(offset)
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    @retry_on_connection_error
    def count_files(self,
                    user_id: str,
                    file_types: Optional[Sequence[str]] = None,
                    tags: Optional[Sequence[str]] = None,
                    date_range: Optional[DateRange] = None,
                    conversation_id: Optional[str] = None) -> int:
        stmt = self._file_filters(select(func.count(FileRecord.id)), user_id, file_types, tags, date_range, conversation_id)
        with self.session_scope() as session:
            return session.execute(stmt).scalar_one()

    # Access and query logs

    @retry_on_connection_error
    def log_file_access(self, file_id: str, user_id: str, access_type: str) -> None:
        """Append an access row and refresh the file's last-accessed timestamp."""
        now = utc_now()
        with self.session_scope() as session:
            session.add(FileAccessLog(file_id=file_id, user_id=user_id, access_type=access_type, accessed_at=now))
            record = session.execute(select(FileRecord).filter_by(id=file_id, user_id=user_id)).scalar_one_or_none()
            if record is not None:
                record.last_accessed = now

    @retry_on_connection_error
    def log_search_query(self, user_id: str, query_text: str, query_type: str, file_paths: Sequence[str],
                         execution_time_ms: int) -> None:
        with self.session_scope() as session:
            session.add(
                SearchQuery(user_id=user_id,
                            query_text=query_text,
                            query_type=query_type,
                            file_paths=list(file_paths),
                            execution_time_ms=execution_time_ms))

    @retry_on_connection_error
    def list_search_queries(self, user_id: str, limit: int = 20) -> List[SearchQuery]:
        stmt = select(SearchQuery).where(SearchQuery.user_id == user_id).order_by(SearchQuery.created_at.desc()).limit(limit)
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    @retry_on_connection_error
    def list_file_access(self, file_id: str, user_id: str) -> List[FileAccessLog]:
        stmt = select(FileAccessLog).where(FileAccessLog.file_id == file_id,
                                           FileAccessLog.user_id == user_id).order_by(FileAccessLog.accessed_at)
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    # Rules and triggers

    @retry_on_connection_error
    def list_rules(self, user_id: str, active_only: bool = False) -> List[MemoryRule]:
        stmt = select(MemoryRule).where(MemoryRule.user_id == user_id)
        if active_only:
            stmt = stmt.where(MemoryRule.is_active.is_(True))
        with self.session_scope() as session:
            return list(session.execute(stmt.order_by(MemoryRule.created_at)).scalars())

    @retry_on_connection_error
    def create_rule(self,
                    user_id: str,
                    rule_type: str,
                    conditions: Dict[str, Any],
                    actions: Dict[str, Any],
                    is_active: bool = True) -> MemoryRule:
        rule = MemoryRule(user_id=user_id, rule_type=rule_type, conditions=conditions, actions=actions, is_active=is_active)
        with self.session_scope() as session:
            session.add(rule)
        return rule

    @retry_on_connection_error
    def record_trigger(self, trigger_type: str, conversation_id: str, details: Dict[str, Any]) -> MemoryTrigger:
        trigger = MemoryTrigger(trigger_type=trigger_type, conversation_id=conversation_id, details=details)
        with self.session_scope() as session:
            session.add(trigger)
        return trigger

    @retry_on_connection_error
    def last_trigger_at(self, user_id: str, trigger_type: str) -> Optional[datetime]:
        """Most recent firing of a rule type across all of a user's conversations."""
        stmt = select(func.max(MemoryTrigger.triggered_at)).join(
            Conversation, Conversation.id == MemoryTrigger.conversation_id).where(Conversation.user_id == user_id,
                                                                                 MemoryTrigger.trigger_type == trigger_type)
        with self.session_scope() as session:
            return session.execute(stmt).scalar_one_or_none()

    @retry_on_connection_error
    def list_triggers(self, conversation_id: str) -> List[MemoryTrigger]:
        stmt = select(MemoryTrigger).where(MemoryTrigger.conversation_id == conversation_id).order_by(
            MemoryTrigger.triggered_at)
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    # Agent jobs and proposals

    @retry_on_connection_error
    def create_job(self, user_id: str, title: str, **fields) -> AgentJob:
        job = AgentJob(user_id=user_id, title=title, **fields)
        with self.session_scope() as session:
            session.add(job)
        return job

    @retry_on_connection_error
    def get_job(self, job_id: str, user_id: str) -> Optional[AgentJob]:
        with self.session_scope() as session:
            return session.execute(select(AgentJob).filter_by(id=job_id, user_id=user_id)).scalar_one_or_none()

    @retry_on_connection_error
    def list_jobs(self, user_id: str, limit: int = 20, offset: int = 0) -> List[AgentJob]:
        stmt = select(AgentJob).where(AgentJob.user_id == user_id).order_by(AgentJob.scraped_at.desc()).limit(limit).offset(
            offset)
        with self.session_scope() as session:
            return list(session.execute(stmt).scalars())

    @retry_on_connection_error
    def create_proposal(self, job_id: str, content: str, **fields) -> Proposal:
        proposal = Proposal(job_id=job_id, content=content, **fields)
        with self.session_scope() as session:
            session.add(proposal)
        return proposal

    @retry_on_connection_error
    def get_proposal(self, proposal_id: str, user_id: str) -> Optional[Proposal]:
        stmt = select(Proposal).join(AgentJob, AgentJob.id == Proposal.job_id).where(Proposal.id == proposal_id,
                                                                                     AgentJob.user_id == user_id)
        with self.session_scope() as session:
            return session.execute(stmt).scalar_one_or_none()

    @retry_on_connection_error
    def list_proposals(self, user_id: str, job_id: Optional[str] = None) -> List[Proposal]:
        stmt = select(Proposal).join(AgentJob, AgentJob.id == Proposal.job_id).where(AgentJob.user_id == user_id)
        if job_id:
            stmt = stmt.where(Proposal.job_id == job_id)
        with self.session_scope() as session:
            return list(session.execute(stmt.order_by(Proposal.generated_at.desc())).scalars())

    def health_check(self) -> bool:
        """
        Perform a health check on the catalog database.

        Returns:
            True if the database answers, False otherwise
        """
        try:
            with self.engine.connect() as connection:
                connection.execute(text('SELECT 1'))
            return True
        except Exception as e:
            logger.error(f'Catalog health check failed: {e}')
            return False
