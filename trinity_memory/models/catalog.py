"""
Relational metadata catalog schema.

The catalog is the source of truth for existence and ownership: a file or
conversation without a row here is inaccessible regardless of what the file
share or the vector index hold.
"""

import uuid

from sqlalchemy import (JSON, BigInteger, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text,
                        UniqueConstraint)
from sqlalchemy.orm import declarative_base, relationship

from ..utils.timestamp_utils import utc_now

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class Conversation(Base):
    __tablename__ = 'conversations'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(128), nullable=False, index=True)
    session_id = Column(String(128))
    message_count = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default='active')  # active | closed
    summary = Column(Text)
    metadata_ = Column('metadata', JSON, nullable=False, default=dict)
    started_at = Column(DateTime, nullable=False, default=utc_now)
    ended_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    messages = relationship('Message',
                            back_populates='conversation',
                            cascade='all, delete-orphan',
                            order_by='Message.timestamp',
                            lazy='selectin')
    tag_links = relationship('ConversationTag', cascade='all, delete-orphan', lazy='selectin')

    @property
    def tags(self):
        return sorted(link.tag.name for link in self.tag_links)


class Message(Base):
    __tablename__ = 'messages'

    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(String(36), ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # user | assistant
    token_count = Column(Integer)
    vector_id = Column(String(255))
    metadata_ = Column('metadata', JSON)
    timestamp = Column(DateTime, nullable=False, default=utc_now, index=True)

    conversation = relationship('Conversation', back_populates='messages')


class Tag(Base):
    __tablename__ = 'tags'
    __table_args__ = (UniqueConstraint('name', 'user_id', name='uq_tags_name_user'), )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False)
    user_id = Column(String(128), nullable=False, index=True)
    category = Column(String(64))
    color = Column(String(16))
    created_at = Column(DateTime, nullable=False, default=utc_now)


class ConversationTag(Base):
    __tablename__ = 'conversation_tags'

    conversation_id = Column(String(36), ForeignKey('conversations.id', ondelete='CASCADE'), primary_key=True)
    tag_id = Column(Integer, ForeignKey('tags.id'), primary_key=True)

    tag = relationship('Tag', lazy='joined')


class FileRecord(Base):
    """Catalog mirror of a blob on the file share."""
    __tablename__ = 'files'
    __table_args__ = (UniqueConstraint('user_id', 'file_path', name='uq_files_user_path'), )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(128), nullable=False, index=True)
    file_path = Column(String(1024), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    folder_path = Column(String(1024), nullable=False)
    file_type = Column(String(32), index=True)
    file_size = Column(BigInteger)
    mime_type = Column(String(128))
    checksum = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    modified_at = Column(DateTime, nullable=False, default=utc_now)
    last_accessed = Column(DateTime)
    indexed_at = Column(DateTime)
    title = Column(Text)
    summary = Column(Text)
    metadata_ = Column('metadata', JSON)
    conversation_id = Column(String(36), ForeignKey('conversations.id', ondelete='SET NULL'), index=True)
    vector_ids = Column(JSON, nullable=False, default=list)

    tag_links = relationship('FileTag', cascade='all, delete-orphan', lazy='selectin')
    access_logs = relationship('FileAccessLog', cascade='all, delete-orphan', passive_deletes=True)

    @property
    def tags(self):
        return [link.name for link in self.tag_links]


class FileTag(Base):
    __tablename__ = 'file_tags'

    file_id = Column(String(36), ForeignKey('files.id', ondelete='CASCADE'), primary_key=True)
    name = Column(String(128), primary_key=True, index=True)
    source = Column(String(16), nullable=False, default='content')  # content | user


class MemoryRule(Base):
    __tablename__ = 'memory_rules'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(128), nullable=False, index=True)
    rule_type = Column(String(16), nullable=False)  # length | keyword | time
    conditions = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)


class MemoryTrigger(Base):
    """Audit row written once per rule firing; never updated."""
    __tablename__ = 'memory_triggers'

    id = Column(String(36), primary_key=True, default=_uuid)
    trigger_type = Column(String(16), nullable=False)
    conversation_id = Column(String(36), ForeignKey('conversations.id'), nullable=False, index=True)
    details = Column(JSON)
    triggered_at = Column(DateTime, nullable=False, default=utc_now, index=True)


class SearchQuery(Base):
    __tablename__ = 'search_queries'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(128), nullable=False, index=True)
    query_text = Column(Text, nullable=False)
    query_type = Column(String(16), nullable=False)
    file_paths = Column(JSON, nullable=False, default=list)
    execution_time_ms = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class FileAccessLog(Base):
    __tablename__ = 'file_access_logs'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(128), nullable=False, index=True)
    file_id = Column(String(36), ForeignKey('files.id', ondelete='CASCADE'), nullable=False, index=True)
    access_type = Column(String(16), nullable=False)  # search | direct
    accessed_at = Column(DateTime, nullable=False, default=utc_now)


class AgentJob(Base):
    __tablename__ = 'agent_jobs'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(128), nullable=False, index=True)
    source = Column(String(64))
    title = Column(Text, nullable=False)
    description = Column(Text)
    budget_min = Column(Numeric(10, 2))
    budget_max = Column(Numeric(10, 2))
    posted_at = Column(DateTime)
    scraped_at = Column(DateTime, nullable=False, default=utc_now)
    metadata_ = Column('metadata', JSON)

    proposals = relationship('Proposal', back_populates='job', order_by='Proposal.generated_at')


class Proposal(Base):
    __tablename__ = 'proposals'

    id = Column(String(36), primary_key=True, default=_uuid)
    job_id = Column(String(36), ForeignKey('agent_jobs.id'), nullable=False, index=True)
    conversation_id = Column(String(36), ForeignKey('conversations.id', ondelete='SET NULL'))
    content = Column(Text, nullable=False)
    generated_at = Column(DateTime, nullable=False, default=utc_now)
    submitted_at = Column(DateTime)
    status = Column(String(16))
    metadata_ = Column('metadata', JSON)

    job = relationship('AgentJob', back_populates='proposals')
