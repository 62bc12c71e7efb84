"""
Proposal Agent generating freelance proposals for scraped jobs.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..models.catalog import AgentJob, Proposal
from ..utils.bedrock_llm import BedrockLLM
from ..utils.blob_store import BlobStore, build_user_path
from ..utils.catalog_client import CatalogClient
from ..utils.config import BlobStoreConfig
from ..utils.errors import DependencyError, NotFoundError, TrinityMemoryError, ValidationError, best_effort
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import parse_timestamp, to_iso, utc_now
from .file_indexer import FileIndexer

logger = get_logger(__name__)

PROPOSAL_SYSTEM_PROMPT = ('You are an expert freelance proposal writer. Create compelling, personalized proposals that '
                          'highlight relevant experience and value proposition.')

PREVIEW_CHARS = 1000


class ProposalAgentError(DependencyError):
    """Custom exception for proposal agent errors."""
    pass


def build_prompt(job: AgentJob, template: Optional[str] = None, custom_instructions: Optional[str] = None) -> str:
    lines = ['Generate a professional freelance proposal for the following job:', '', f'Title: {job.title}']
    if job.description:
        lines.append(f'Description: {job.description}')
    if job.budget_min is not None or job.budget_max is not None:
        low = job.budget_min if job.budget_min is not None else '?'
        high = job.budget_max if job.budget_max is not None else '?'
        lines.append(f'Budget: ${low} - ${high}')
    if template:
        lines += ['', 'Use this template structure:', template]
    if custom_instructions:
        lines += ['', 'Additional instructions:', custom_instructions]
    lines += [
        '', 'The proposal should be personalized, highlight relevant experience, and clearly communicate value proposition.'
    ]
    return '\n'.join(lines)


def _budget(value: Any, name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f'{name} must be a number, got {value!r}')


class ProposalAgent:
    """Store agent jobs and generate proposals into the catalog, the file share and the index."""

    def __init__(self, catalog: CatalogClient, blob_store: BlobStore, indexer: FileIndexer, llm: BedrockLLM,
                 config: BlobStoreConfig):
        self.catalog = catalog
        self.blob_store = blob_store
        self.indexer = indexer
        self.llm = llm
        self.root_namespace = config.root_namespace

        logger.info('Initialized ProposalAgent')

    def create_job(self,
                   user_id: str,
                   title: str,
                   description: Optional[str] = None,
                   source: Optional[str] = None,
                   budget_min: Any = None,
                   budget_max: Any = None,
                   posted_at: Any = None,
                   metadata: Optional[Dict[str, Any]] = None) -> AgentJob:
        """
        Store a scraped job.

        Raises:
            ValidationError: If the title is empty or the budget is not numeric
        """
        if not user_id:
            raise ValidationError('user_id is required')
        if not title or not title.strip():
            raise ValidationError('title must not be empty')

        low, high = _budget(budget_min, 'budget_min'), _budget(budget_max, 'budget_max')
        if low is not None and high is not None and low > high:
            raise ValidationError('budget_min must not exceed budget_max')

        job = self.catalog.create_job(user_id,
                                      title.strip(),
                                      description=description,
                                      source=source,
                                      budget_min=low,
                                      budget_max=high,
                                      posted_at=parse_timestamp(posted_at),
                                      metadata_=metadata or {})
        logger.info(f'Created job {job.id} for user {user_id}')
        return job

    def get_job(self, job_id: str, user_id: str) -> AgentJob:
        job = self.catalog.get_job(job_id, user_id)
        if job is None:
            raise NotFoundError('Job not found')
        return job

    def list_jobs(self, user_id: str, limit: int = 20, offset: int = 0) -> List[AgentJob]:
        return self.catalog.list_jobs(user_id, limit=limit, offset=offset)

    def generate_proposal(self,
                          job_id: str,
                          user_id: str,
                          template: Optional[str] = None,
                          custom_instructions: Optional[str] = None) -> Dict[str, Any]:
        """
        Generate a proposal for a job and store it.

        The catalog keeps a preview; the full text is written to the share under
        ``agents/proposals`` and indexed.

        Returns:
            Dict with the proposal row, its share path and the full text

        Raises:
            NotFoundError: If the user has no such job
            ProposalAgentError: If generation or storage fails
        """
        job = self.get_job(job_id, user_id)
        logger.info(f'Generating proposal for job {job.id}')

        try:
            content = self.llm.complete(build_prompt(job, template, custom_instructions), PROPOSAL_SYSTEM_PROMPT, 1000)
            if not content:
                raise ProposalAgentError('Model returned an empty proposal')

            proposal = self.catalog.create_proposal(job.id,
                                                    content[:PREVIEW_CHARS],
                                                    status='draft',
                                                    metadata_={
                                                        'model': self.llm.model_id,
                                                        'template': template or 'default',
                                                        'generatedAt': to_iso(utc_now()),
                                                    })

            proposal_path = build_user_path(self.root_namespace, user_id, 'agents/proposals', f'proposal_{proposal.id}.md')
            self.blob_store.write_file(proposal_path, content)
        except ProposalAgentError:
            raise
        except TrinityMemoryError as e:
            logger.error(f'Failed to generate proposal for job {job.id}: {e}')
            raise ProposalAgentError(f'Proposal generation failed: {e.message}')

        # The proposal is stored; an indexing failure only delays its searchability
        with best_effort(logger, f'index proposal {proposal.id}'):
            self.indexer.index_file(proposal_path, user_id)

        logger.info(f'Proposal {proposal.id} generated and saved to {proposal_path}')
        return {'proposal': proposal, 'file_path': proposal_path, 'full_content': content}

    def get_proposal(self, proposal_id: str, user_id: str) -> Proposal:
        proposal = self.catalog.get_proposal(proposal_id, user_id)
        if proposal is None:
            raise NotFoundError('Proposal not found')
        return proposal

    def list_proposals(self, user_id: str, job_id: Optional[str] = None) -> List[Proposal]:
        return self.catalog.list_proposals(user_id, job_id=job_id)
